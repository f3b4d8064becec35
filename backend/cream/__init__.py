"""Cream: billing orchestration between Stripe and big-poppa."""
