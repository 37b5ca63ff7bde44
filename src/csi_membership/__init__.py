"""Executive membership payments for the CSI NMAMIT chapter site."""

__version__ = "0.1.0"
