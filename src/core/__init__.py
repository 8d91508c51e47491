"""Core domain package for telerelay.

Core contains the poll, dedup, deliver and backoff logic without any X,
Telegram or storage-specific code, keeping the engine portable.
"""
