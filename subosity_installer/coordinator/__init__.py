"""Host-side coordinator.

- **preflight**: Host facts and system requirement checks
- **docker**: Docker CE presence check and installation
- **workspace**: Persistent installation directory tree
- **runner**: Launches and supervises the installer container
- **status**: Installation status query
"""
