"""Shared AWS client and parameter-store helpers."""
