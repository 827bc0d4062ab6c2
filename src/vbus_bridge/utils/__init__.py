"""Low-level helpers for the VBus wire format."""
