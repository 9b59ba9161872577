"""fedlicense - signed license fulfillment for fedDSP plugins sold via Lemon Squeezy."""

__version__ = "0.1.0"
