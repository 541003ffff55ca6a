"""Hermes relay application: routing, rendering, dispatch and admin tooling."""
