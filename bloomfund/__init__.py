"""
BloomFund crowdfunding backend.

This package provides a FastAPI application with storage, database and
analytics abstractions for campaigns, pledges, reward fulfillment and
creator payouts.
"""
