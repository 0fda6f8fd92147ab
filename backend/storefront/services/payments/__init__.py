"""Stripe and M-Pesa payment bridges."""
