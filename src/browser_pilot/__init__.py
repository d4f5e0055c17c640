"""
Browser-Pilot: lets a model drive a remote MCP tool server while a human
watches live progress.
"""

__version__ = "0.1.0"
