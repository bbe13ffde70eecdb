"""
Creator Billing - payment reconciliation and recurring billing for creator subscriptions
"""

__version__ = "0.1.0"
