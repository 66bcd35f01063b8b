"""Claim-based event processor for CRM consumers."""
