"""agency_gateway.integrations — Outbound partner gateway modules.

All outbound HTTP calls to insurance partners must go through a gateway in
this package, never via bare `requests` calls in services or blueprints.

Every call is:
  - Authenticated (partner-specific headers injected by the gateway)
  - Retried with exponential backoff on transient failures
  - Audited with sensitive fields redacted

Current gateways:
  winflex_gateway.WinFlexGateway     — multi-carrier life quotes
  ipipeline_gateway.IPipelineGateway — term quotes and e-applications
  ratewatch_gateway.RateWatchGateway — annuity rate comparison
"""
