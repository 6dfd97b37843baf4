"""Success Family community platform API."""
