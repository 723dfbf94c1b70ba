"""
integrations — third-party connections and event hook dispatch.

Provides:
  • OAuth2 connect / callback handshake with signed, time-boxed state
  • Per-workspace connection storage with AES-GCM encrypted tokens
  • Single-flight token refresh
  • Fan-out of domain events to Slack, Teams, Jira, … with retry
  • Best-effort cascade archive of linked external records

Each provider (Slack, Jira, …) is a subclass of BaseIntegration.
"""
