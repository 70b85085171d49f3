"""Transcoding module.

Submits assets to an external encoder, tracks each job through an explicit
state machine and registers the renditions it produces.
"""
