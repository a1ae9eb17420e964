"""Building blocks for an HTTP API gateway: request context, variables, middlewares,
access logs, file configuration and zero-downtime upgrades."""

__version__ = "0.1.0"