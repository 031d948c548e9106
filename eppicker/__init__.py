"""Endpoint picker for inference gateways: pool datastore, saturation detection, request routing and stream processing."""

__version__ = "0.1.0"

__all__ = ["collectors", "datastore", "extproc", "handlers", "plugins", "requestcontrol", "saturation"]