"""
Flyer discount pipeline.

Turns photographed retail flyers into catalog discounts: parse the flyer with
a vision model, generate clean product photos, rank catalog matches and apply
approved discounts transactionally.
"""

__all__ = [
    "config",
    "errors",
    "logging",
    "paths",
]
