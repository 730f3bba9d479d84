"""
Utilities package - Kubernetes access and manifest handling.

Contains:
- kubernetes: API client setup and the resource store used by reconcilers
- manifests: named templates for every derived Dex resource
- applier: owner-tagged create-or-update of rendered templates
- rbac: the process-wide cluster role installed at startup
"""
