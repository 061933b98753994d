"""Operator engine for template-based provisioning.

Resolves a template's dependency graph, plans a deterministic operation
order, and dispatches the plan to a provider.
"""
