# core/proxy/__init__.py
"""
Proxy modules package.

Cache storage, request classification, caching strategies and the
upstream network layer used by the local proxy server.
"""

__all__ = []
