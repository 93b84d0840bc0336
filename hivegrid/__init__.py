"""hivegrid: isolated coding agents coordinated over a message hub."""

__version__ = "0.1.0"
