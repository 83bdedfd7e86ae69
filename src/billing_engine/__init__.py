"""
Billing Engine - billing lifecycle and settlement service
"""

__version__ = "0.1.0"
