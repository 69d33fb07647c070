"""
Field Closeout — Fixtures

FixtureBackend (in-memory LegacyBackend that records calls) and the
scenario loader for fixtures/scenarios/*.yaml.
"""
