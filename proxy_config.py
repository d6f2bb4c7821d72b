# -----------------------------------------------------------------------------
# Proxy Desired State
#
# Declarative description of the reverse proxy a target host should converge
# to, and the nginx configuration rendered from it.
# -----------------------------------------------------------------------------

import shlex
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

DEFAULT_CIPHERS = (
    "ECDHE-RSA-AES256-GCM-SHA512",
    "DHE-RSA-AES256-GCM-SHA512",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "DHE-RSA-AES256-GCM-SHA384",
)

PACKAGE_MANAGERS = ("yum", "dnf", "apt")


@dataclass(frozen=True)
class CorsPolicy:
    """CORS headers added to every proxied response."""

    allow_origin: str = "*"
    allow_methods: Tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "OPTIONS")
    allow_headers: Tuple[str, ...] = (
        "DNT",
        "User-Agent",
        "X-Requested-With",
        "If-Modified-Since",
        "Cache-Control",
        "Content-Type",
        "Range",
    )


@dataclass(frozen=True)
class ProxyRuleset:
    """
    Listener, upstream and header rules for the proxy.

    Attributes:
        http_port: Plain HTTP listener, redirects to HTTPS
        https_port: TLS listener proxying to the upstream
        upstream_host: Host of the local upstream
        upstream_port: Port of the local upstream
        timeout_seconds: Read, connect and send timeout for long-lived connections
        forward_upgrade: Forward Upgrade/Connection headers for WebSocket traffic
    """

    http_port: int = 80
    https_port: int = 443
    server_name: str = "_"
    upstream_host: str = "localhost"
    upstream_port: int = 8080
    tls_protocols: Tuple[str, ...] = ("TLSv1.2", "TLSv1.3")
    ciphers: Tuple[str, ...] = DEFAULT_CIPHERS
    http2: bool = True
    timeout_seconds: int = 86400
    forward_upgrade: bool = True
    cors: Optional[CorsPolicy] = field(default_factory=CorsPolicy)


@dataclass(frozen=True)
class CertificatePolicy:
    """Self-signed certificate settings. The CN is discovered on the host."""

    directory: str = "/etc/nginx/ssl"
    name: str = "openclaw"
    days: int = 365
    key_bits: int = 2048
    country: str = "US"
    state: str = "State"
    locality: str = "City"
    organization: str = "OpenClaw"

    @property
    def cert_path(self) -> str:
        return f"{self.directory}/{self.name}.crt"

    @property
    def key_path(self) -> str:
        return f"{self.directory}/{self.name}.key"

    def subject(self, address: str) -> str:
        """Return the openssl ``-subj`` string for *address*."""
        return (
            f"/C={self.country}/ST={self.state}/L={self.locality}"
            f"/O={self.organization}/CN={address}"
        )


@dataclass(frozen=True)
class DesiredState:
    """
    Target configuration a host should converge to.

    Attributes:
        packages: Packages that must be installed
        package_manager: One of yum, dnf or apt
        certificate: Certificate generation policy
        proxy: Proxy ruleset rendered into ``config_path``
        config_path: Location of the rendered proxy configuration
        service: Service enabled and restarted once the config validates
        validate_command: Command checking the configuration syntax
        process_name: Upstream process counted by the health check
        state_dir: Directory holding the applied-state stamp
        health_check_path: Where the published document writes the health-check script
    """

    packages: Tuple[str, ...] = ("nginx",)
    package_manager: str = "yum"
    certificate: CertificatePolicy = field(default_factory=CertificatePolicy)
    proxy: ProxyRuleset = field(default_factory=ProxyRuleset)
    config_path: str = "/etc/nginx/conf.d/openclaw.conf"
    service: str = "nginx"
    validate_command: Tuple[str, ...] = ("nginx", "-t")
    process_name: str = "openclaw-gateway"
    state_dir: str = "/var/lib/hostconfig"
    health_check_path: str = "/home/ec2-user/nginx-health-check.sh"

    @property
    def stamp_path(self) -> str:
        return f"{self.state_dir}/{self.service}.applied"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "DesiredState":
        """
        Build a descriptor from a camelCase or snake_case mapping.

        Unknown keys are rejected so typos in stack or CLI configuration do not
        silently fall back to defaults.

        Args:
            data: Mapping loaded from Pulumi config or a YAML file

        Returns:
            DesiredState: The parsed descriptor

        Raises:
            ValueError: If the mapping contains unknown keys or bad values
        """
        data = _snake_keys(data, "desired state")
        certificate = _build(CertificatePolicy, data.pop("certificate", None), "certificate")
        proxy_data = _snake_keys(data.pop("proxy", None), "proxy")
        cors_data = proxy_data.pop("cors", {})
        cors = None if cors_data is None else _build(CorsPolicy, cors_data, "proxy.cors")
        proxy = replace(_build(ProxyRuleset, proxy_data, "proxy"), cors=cors)
        state = replace(
            _build(cls, data, "desired state"), certificate=certificate, proxy=proxy
        )
        if state.package_manager not in PACKAGE_MANAGERS:
            raise ValueError(
                f"Unsupported package manager '{state.package_manager}'. "
                f"Use one of: {', '.join(PACKAGE_MANAGERS)}"
            )
        if not state.packages:
            raise ValueError("Desired state must name at least one package")
        if not state.validate_command:
            raise ValueError("Desired state requires a validate command")
        return state


def render_proxy_config(
    state: DesiredState, upstream_port: Optional[Union[int, str]] = None
) -> str:
    """
    Render the nginx configuration for *state*.

    Args:
        state: Desired state holding the proxy ruleset and certificate paths
        upstream_port: Override for the upstream port, e.g. a document
            placeholder such as ``{{ upstreamPort }}``

    Returns:
        str: The complete configuration file content
    """
    proxy = state.proxy
    port = proxy.upstream_port if upstream_port is None else upstream_port
    listen = f"{proxy.https_port} ssl http2" if proxy.http2 else f"{proxy.https_port} ssl"
    redirect_target = "https://$host$request_uri"
    if proxy.https_port != 443:
        redirect_target = f"https://$host:{proxy.https_port}$request_uri"

    lines: List[str] = [
        "# Redirect HTTP to HTTPS",
        "server {",
        f"    listen {proxy.http_port};",
        f"    server_name {proxy.server_name};",
        f"    return 301 {redirect_target};",
        "}",
        "",
        "# HTTPS reverse proxy",
        "server {",
        f"    listen {listen};",
        f"    server_name {proxy.server_name};",
        "",
        f"    ssl_certificate {state.certificate.cert_path};",
        f"    ssl_certificate_key {state.certificate.key_path};",
        f"    ssl_protocols {' '.join(proxy.tls_protocols)};",
        f"    ssl_ciphers {':'.join(proxy.ciphers)};",
        "    ssl_prefer_server_ciphers off;",
        "",
        "    location / {",
        f"        proxy_pass http://{proxy.upstream_host}:{port};",
        "        proxy_http_version 1.1;",
    ]
    if proxy.forward_upgrade:
        lines += [
            "        proxy_set_header Upgrade $http_upgrade;",
            '        proxy_set_header Connection "upgrade";',
        ]
    lines += [
        "        proxy_set_header Host $host;",
        "        proxy_set_header X-Real-IP $remote_addr;",
        "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "        proxy_set_header X-Forwarded-Proto $scheme;",
    ]
    if proxy.forward_upgrade:
        lines.append("        proxy_cache_bypass $http_upgrade;")
    lines += [
        f"        proxy_read_timeout {proxy.timeout_seconds};",
        f"        proxy_connect_timeout {proxy.timeout_seconds};",
        f"        proxy_send_timeout {proxy.timeout_seconds};",
    ]
    if proxy.cors is not None:
        cors = proxy.cors
        lines += [
            "",
            f'        add_header Access-Control-Allow-Origin "{cors.allow_origin}" always;',
            f'        add_header Access-Control-Allow-Methods "{", ".join(cors.allow_methods)}" always;',
            f'        add_header Access-Control-Allow-Headers "{",".join(cors.allow_headers)}" always;',
        ]
    lines += ["    }", "}"]
    return "\n".join(lines) + "\n"


def _build(cls, data: Optional[Mapping[str, Any]], label: str):
    data = _snake_keys(data, label)
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown {label} setting(s): {', '.join(unknown)}")
    values: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(known[key].default, tuple):
            value = _as_tuple(value, f"{label}.{key}")
        values[key] = value
    return cls(**values)


def _as_tuple(value: Any, label: str) -> Tuple[str, ...]:
    # Sequences from YAML/JSON arrive as lists; the dataclasses are frozen.
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value)
    if isinstance(value, str):
        return tuple(shlex.split(value))
    raise ValueError(f"'{label}' must be a list or a string, got {type(value).__name__}")


def _snake_keys(data: Optional[Mapping[str, Any]], label: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"'{label}' must be a mapping, got {type(data).__name__}")
    result: Dict[str, Any] = {}
    for key, value in data.items():
        snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in str(key))
        result[snake] = value
    return result
