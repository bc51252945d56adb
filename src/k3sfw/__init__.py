"""
k3sfw - Firewall rule compiler and enforcement engine for k3s nodes.

Compiles a declarative network policy into a single nftables table,
applies it atomically, verifies it and rolls back on failure.
"""

__version__ = "1.0.0"
__author__ = "k3sfw Team"
