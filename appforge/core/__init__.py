"""
Core modules for AppForge.

Credits and billing periods, entitlements, pricing and model routing, the
tool-calling orchestrator and the AI run coordinator.
"""
