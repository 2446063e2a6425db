"""Agentflow: workflow step interpreter with a durable execution ledger and approval gates."""

__version__ = "1.0.0"
