"""Command line tools for classicmon."""
