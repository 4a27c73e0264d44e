"""
Integrations layer.
This package contains all code used to communicate with external systems:
- Slack (agent workspace: escalation notices, threads, agent identities)
- WhatsApp Cloud API (outbound user messages, webhook signatures)

Escalation and relay code calls these clients; it never talks HTTP itself.
"""
