"""secretsync - secret distribution and environment provisioning engine."""

__version__ = "0.1.0"
