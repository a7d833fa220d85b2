"""HTTP server: job CRUD, run streaming (SSE) and session windows."""
