"""
Utilities Package for Uptime Sentinel

Logging setup, time and batching helpers, and URL validation.
"""
