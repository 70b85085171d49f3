"""Delivery module for plan- and device-aware playback resolution."""
