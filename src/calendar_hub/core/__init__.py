"""Process-wide logging and tracing setup."""
