"""Command-line front end: quote-pipeline <command> [args...]."""
