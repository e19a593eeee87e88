"""
SignGate - local authorization policy engine for signing requests.

SignGate sits between third-party apps and a locally held identity key.
Every request to use the key (sign an event, encrypt, decrypt, reveal the
public key) is checked against stored per-app decisions, rate limited,
scored for risk, and written to a hash-chained audit log.  The signing
itself happens elsewhere; SignGate only answers ALLOW, DENY, or ASK.

Package layout (src/signgate/):
  core/         - clock, classifier, permission store, risk, rate limits, audit
  core/store/   - SQLite database and schema migrations
  cli/          - Click CLI entry point
"""

__version__ = "0.3.0"
__all__ = ["__version__"]
