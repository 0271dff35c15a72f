"""LP-collateralised CDP vault engine."""

__version__ = "0.1.0"
