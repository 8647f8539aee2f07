"""Building blocks of a forwarding DNS proxy: caching, DNS64, upstream exchange, configuration."""

__version__ = "0.1.0"