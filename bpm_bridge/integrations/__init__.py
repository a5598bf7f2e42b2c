"""bpm_bridge.integrations: external service gateway modules.

All outbound HTTP calls to the BPM middleware must go through the gateway
in this package, never via bare `requests` calls in services or blueprints.

Current gateways:
  bpm_gateway.BpmGateway: BPM middleware REST API
"""
