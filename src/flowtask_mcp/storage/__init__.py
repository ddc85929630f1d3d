"""DuckDB persistence for OAuth state."""
