"""Derivative generation for ingested photographs.

Decodes a source image once per resolution tier, encodes every tier in every
delivery encoding, and manages the resulting key space in the object store
as one unit: all-or-nothing persistence and idempotent fan-out deletion.
"""
