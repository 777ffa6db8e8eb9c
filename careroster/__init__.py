"""CareRoster - recurring home-visit scheduling with authorization unit metering."""

__version__ = "0.1.0"
