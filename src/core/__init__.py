"""Shared building blocks for the inscriber service: logging, configuration,
error types and clients for the chain, marketplace and wallet providers."""

__version__ = "1.0.0"
