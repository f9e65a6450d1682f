"""Quarterly top-N collection selection and daily floor-price history sync."""

__version__ = "1.0.0"
