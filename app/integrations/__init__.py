"""app.integrations — Outbound service gateways.

Services never call ``requests`` directly; every call to a collaborating
service goes through a gateway in this package so timeouts, retries and
logging live in one place.

Current gateways:
  order_gateway.HttpOrderGateway          — booking order service (materialization)
  availability_gateway.HttpAvailabilityGateway — calendar / availability checks
"""
