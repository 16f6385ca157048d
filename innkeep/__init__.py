"""Innkeep: reservation lifecycle and billing core for a hotel/guesthouse backend."""
