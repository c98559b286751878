"""Signed self-update pipeline for a plugin checkout.

Fetches the plugin's own repository from the best reachable mirror,
verifies the target commit's OpenPGP signature against a compiled-in
fingerprint allowlist, adopts it, reinstalls dependencies, rebuilds the
output atomically and schedules a zero-downtime reload.
"""

__version__ = "0.1.0"
