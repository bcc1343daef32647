"""
Pollboard: a polling API whose identity, sessions and storage live on a hosted platform.
"""
