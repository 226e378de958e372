"""Facility membership, transfer workflow and role-based access control."""

import logging

# Azure SDK emits HTTP-level logs at INFO; silence globally so the
# Cosmos DB roster store stays quiet.
logging.getLogger("azure").setLevel(logging.WARNING)
