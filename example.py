#!/usr/bin/env python3
"""Example usage of snidial.

Dialers are lazy: the metadata endpoint is only contacted on the first
``dial()``.  Each ``dial()`` returns a verified TLS socket to one backend,
routed by the SNI proxy; the caller owns and must close it.
"""

import logging

from snidial import Deadline, DialRequest, SnidialError, new_dialer

logging.basicConfig(level=logging.DEBUG)

dialer = new_dialer(
    "secure-connect/ca.crt",
    "db.example.com",
    29080,
    cert_file="secure-connect/cert",
    key_file="secure-connect/key",
)

# ── Round robin over the advertised contact points ──────────────────────
for _ in range(3):
    established = dialer.dial(deadline=Deadline(10))
    print("connected to", established.identity, "via", established.address)
    established.conn.close()

# ── A specific backend ──────────────────────────────────────────────────
node = dialer.metadata.contact_points[0]
try:
    established = dialer.dial(DialRequest(target_identity=node), deadline=Deadline(10))
except SnidialError as exc:
    print("dial failed:", exc)
else:
    with established.conn:
        print("TLS", established.conn.version(), "to", node)
