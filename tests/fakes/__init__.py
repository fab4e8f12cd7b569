"""Test doubles: a fake clock and scripted quote providers. No live network."""
