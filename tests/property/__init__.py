"""
tests.property
==============

Hypothesis property tests.
"""
