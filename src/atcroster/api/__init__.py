"""Facility and controller operations exposed over HTTP."""
