"""Installer side that runs inside the container.

- **executor**: Ordered phase pipeline with weighted progress reporting
- **phases**: The installation phases (validation -> complete)
- **templates**: Env, Compose and systemd files (Jinja2 templates)
- **status**: Service health report for ``container status``
"""
