"""Bridge between Eloqua campaign steps and the TransmitSMS gateway."""

__version__ = "1.0.0"
