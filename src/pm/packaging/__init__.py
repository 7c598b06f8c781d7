"""
The `packaging` sub-package contains modules related to fetching, verifying
and committing package archives.

This includes:
- Reading archive entries and the signed `manifest.sha256` transcript.
- Verifying manifest trust and archive contents.
- Downloading archives into the cache and orchestrating installs.
"""
