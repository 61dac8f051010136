"""
A2MP - Asynchronous AI Meeting Platform
"""
__version__ = "1.0.0"
