"""
nestedlab - controller for a two-node nested Hyper-V lab with Storage
Spaces Direct in Azure.
"""

__version__ = "0.4.0"
