"""
Fleet Orchestrator - game server pods on Kubernetes

Responsibilities:
- Keep each fleet template between its minimum and maximum instance count
- Track instance lifecycle from pod events, heartbeats and timeouts
- Share instance state across orchestrator replicas over the event bus
- Persist templates and instance history
- Serve routing lookups of READY instances
"""
