"""Deployment orchestration engine.

Builds a resource graph from a manifest, diffs it against persisted state
and drives create/update/delete calls through a provider plugin, then
verifies readiness of what was provisioned.

Package name uses 'deploy_opr' (short for operator) to avoid collision
with Python's stdlib 'operator' module.
"""
