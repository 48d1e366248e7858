"""HTTP server components."""
