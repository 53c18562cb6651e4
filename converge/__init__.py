"""converge: declarative infrastructure reconciler."""

__version__ = "0.3.0"
