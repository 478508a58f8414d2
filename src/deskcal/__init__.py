"""deskcal: a backend over a desktop calendar's automation layer and private store."""

__version__ = "0.1.0"
