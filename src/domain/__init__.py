"""Domain models and pure pricing logic for the rate engine.

Rate quotes, their provenance and the cost-price formulas live here. They are
independent from the HTTP clients and persistence models so that pricing can
be tested without network or DB coupling.
"""

__all__ = [
    "pricing",
    "rates",
]
