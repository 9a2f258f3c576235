"""Process runtime: signal handling and background daemon control."""
