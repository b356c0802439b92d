"""Device registration and the device channel."""
