"""WebPilot command line interface."""
