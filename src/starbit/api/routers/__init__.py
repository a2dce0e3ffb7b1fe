"""Privileged API routers."""
