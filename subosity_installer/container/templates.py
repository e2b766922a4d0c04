"""Static configuration files rendered with Jinja2.

Template variables come from the ``InstallationConfig``:

- ``environment`` : str -- "dev", "staging" or "prod"
- ``domain``      : str -- sanitized domain name
- ``email``       : str -- contact address (may be empty)
- ``host_dir``    : str -- workspace path on the host.  Bind mounts are
  resolved by the host Docker daemon and the systemd unit runs on the host,
  so rendered files reference host paths (or paths relative to the workspace)
- ``supabase_url``, ``frontend_url`` : str -- local service endpoints
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import jinja2

from subosity_installer.constants import FRONTEND_URL, SUPABASE_URL

if TYPE_CHECKING:
    from pathlib import Path

    from subosity_installer.models.config import InstallationConfig

ENV_FILE = """\
# Subosity Application Configuration
ENVIRONMENT={{ environment }}
DOMAIN={{ domain }}
EMAIL={{ email }}

# Supabase Configuration
SUPABASE_URL={{ supabase_url }}

# Application URLs
FRONTEND_URL={{ frontend_url }}
BACKEND_URL={{ supabase_url }}
"""

COMPOSE_FILE = """\
services:
  nginx:
    image: nginx:alpine
    ports:
      - "80:80"
      - "443:443"
    volumes:
      - {{ host_dir }}/configs/nginx:/etc/nginx/conf.d:ro
      - {{ host_dir }}/certs:/etc/ssl/certs:ro
    depends_on:
      - frontend
    restart: unless-stopped

  frontend:
    image: node:18-alpine
    working_dir: /app
    ports:
      - "3000:3000"
    environment:
      - NODE_ENV={{ "development" if environment == "dev" else "production" }}
      - DOMAIN={{ domain }}
    env_file:
      - ./configs/.env
    volumes:
      - {{ host_dir }}/app/frontend:/app
    restart: unless-stopped

networks:
  default:
    external: true
    name: supabase_default
"""

SYSTEMD_UNIT = """\
[Unit]
Description=Subosity Application Stack
After=docker.service
Requires=docker.service

[Service]
Type=oneshot
RemainAfterExit=yes
WorkingDirectory={{ host_dir }}
ExecStart=/usr/bin/docker compose up -d
ExecStop=/usr/bin/docker compose down
ExecReload=/usr/bin/docker compose restart
User=root

[Install]
WantedBy=multi-user.target
"""

_env = jinja2.Environment(autoescape=False, undefined=jinja2.StrictUndefined, keep_trailing_newline=True)  # noqa: S701


def template_vars(config: InstallationConfig, host_dir: Path) -> dict[str, object]:
    return {
        "environment": config.environment.value,
        "domain": config.domain,
        "email": config.email,
        "host_dir": str(host_dir),
        "supabase_url": SUPABASE_URL,
        "frontend_url": FRONTEND_URL,
    }


def render(template: str, config: InstallationConfig, host_dir: Path) -> str:
    return _env.from_string(template).render(**template_vars(config, host_dir))


def render_env_file(config: InstallationConfig, host_dir: Path) -> str:
    return render(ENV_FILE, config, host_dir)


def render_compose_file(config: InstallationConfig, host_dir: Path) -> str:
    return render(COMPOSE_FILE, config, host_dir)


def render_systemd_unit(config: InstallationConfig, host_dir: Path) -> str:
    return render(SYSTEMD_UNIT, config, host_dir)
