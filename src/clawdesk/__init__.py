"""
clawdesk — desktop client core for the local OpenClaw gateway.
"""

__version__ = "0.1.0"
