"""
Onionize HTTP Gateway Package

Read-only static file serving behind the capability gate.
"""

from .gateway import create_app, GatewayServer

__all__ = [
    'create_app',
    'GatewayServer',
]
