"""Provisioning engine for declarative stack definitions.

Builds a resource graph from a stack, resolves expressions against
variables and prior state, plans create/update/destroy actions and
applies them through a provider with per-address state commits.
"""
