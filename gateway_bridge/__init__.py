"""
Messages Gateway Proxy
"""
