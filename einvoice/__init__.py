"""Signed e-invoice generation for the ZATCA (Fatoora) platform."""

__version__ = "1.0.0"
