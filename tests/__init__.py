"""Tests for the self-tunnel client."""
