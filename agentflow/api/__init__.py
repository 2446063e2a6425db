"""HTTP API for templates, executions and approvals."""
