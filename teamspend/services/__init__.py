# ==== SERVICES PACKAGE ==== #

"""
Services package for business logic and external integrations.

This package contains the budget ledger, the expense state machine, the bulk
decision coordinator, team management, and the adapters for the advisory AI
provider and notification delivery.
"""
