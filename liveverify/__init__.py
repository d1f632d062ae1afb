"""Live face verification: pose capture, liveness challenges and profile photo matching"""

__version__ = "2.0.0"
