"""Security Correlation Core - real-time behavioral and graph correlation of security telemetry."""

__version__ = "0.1.0"
