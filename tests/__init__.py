"""paygate test suite."""
