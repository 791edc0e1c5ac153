"""Command line interface for cubechat."""
