"""Priority queue and conversion tracking engine for an outbound claims dialer."""

__version__ = "0.1.0"
