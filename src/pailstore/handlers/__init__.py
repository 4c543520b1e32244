"""HTTP request handlers for PailStore."""
