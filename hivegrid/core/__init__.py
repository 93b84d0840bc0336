"""Workspace isolation, merge coordination, context and session primitives."""
