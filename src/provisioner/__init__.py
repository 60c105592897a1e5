"""Provisioning engine driver for repository manifests.

Renders a manifest into an engine workspace, walks its resource graph
for previews and validation, and runs plan/apply/destroy/check lifecycle
verbs through the engine actions.
"""
