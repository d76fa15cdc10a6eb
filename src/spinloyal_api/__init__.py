"""Reward issuance and redemption engine."""
