"""Command groups registered on the servercore CLI."""
