"""
tests.unit
==========

Fast, deterministic tests of single components against the fakes in
`tests.fakes`. No node, no network, no external validator.
"""
