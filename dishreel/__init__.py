"""dishreel: dish photo → recipe → step-by-step cooking video."""

__version__ = "0.1.0"
