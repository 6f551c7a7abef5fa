"""Magic-link dashboard for personal API keys with validation and README summaries."""
