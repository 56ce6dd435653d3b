"""
Repurpose - asynchronous task orchestration for video repurposing providers.
"""
__version__ = "1.0.0"
