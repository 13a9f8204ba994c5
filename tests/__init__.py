"""
vertexpool Test Suite

Unit tests for each component plus reconcile scenarios that run the whole
engine against an in-memory provider.
"""
