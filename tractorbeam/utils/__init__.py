"""Shared helpers for TractorBeam."""
