"""carecall - scheduled companion calls with a realtime voice bridge"""

__version__ = "1.0.0"
