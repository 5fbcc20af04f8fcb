"""paygate - gateway-agnostic payment orchestration core."""

__version__ = "0.1.0"
