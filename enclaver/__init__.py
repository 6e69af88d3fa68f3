"""Build enclave images and the pieces of the supervisor that runs inside them."""

__version__ = "0.1.0"