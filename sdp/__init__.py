"""Stack Deploy Pipeline (SDP).

Single-host deployment tooling for a small reverse-proxied web application:
 - topology resolution (dependency-ordered bring-up of services)
 - prefix routing for the public listener, swapped atomically on reload
 - build -> publish -> deploy pipeline with recorded stage results
 - remote, idempotent rollout over SSH with rollback to published tags
"""
