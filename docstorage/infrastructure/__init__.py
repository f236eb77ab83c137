"""
Infrastructure layer - external service integrations.

Each subdirectory wraps an external dependency:
- storage: Object storage (S3 and S3-compatible stores)
- http: Outbound HTTP with egress filtering
"""
