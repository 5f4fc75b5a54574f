"""Core domain package for cortex-actions.

Core contains rule normalization, permission and condition checks, the
idempotent resolver, action handlers and the orchestrator, without any
WhatsApp, HTTP or storage-specific code.
"""
