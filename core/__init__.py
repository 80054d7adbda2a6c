"""Shared configuration, constants and database plumbing for the credit ledger."""
