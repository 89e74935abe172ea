"""HTTP server, event multiplexer and configuration."""
