"""Run reporting for provisioning verbs."""
