"""Contracts package.

This package defines the *public* event contracts: stream names, envelope fields,
and v1 payload semantics. Indexers and UIs may only rely on what is declared here.
"""
