"""HTTP API for webdeploy."""
