"""Routing — compiled path-to-unit table.

Mappings are collected while the context is being configured and
compiled into an immutable lookup structure when routing is finalized.
"""
