#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations
import os
import ssl
import json
import time
import uuid
import logging
import threading
from pathlib import Path
from typing import Optional, Dict, Any, List

from flask import Flask, request, Response, jsonify, make_response, render_template, current_app
from werkzeug.datastructures import Headers
from werkzeug.serving import make_server

from detection import (
    RequestSecurityContext, ProtectionEvaluator,
    inspect_transport, is_proxied, normalize_address,
)
from ip_ranges import load_registry

log = logging.getLogger(__name__)

# ----------------------------- Base paths -----------------------------
BASE_DIR = Path(__file__).resolve().parent
SERVICE_VERSION = "2025-11-02.r1"
SERVER_NAME = "edge-origin-inspector"

app = Flask(__name__, template_folder=str(BASE_DIR / "templates"))

# ----------------------------- Config -----------------------------
app.config.update(
    TRACE_HEADER=os.getenv("TRACE_HEADER", "CF-Ray"),
    EDGE_RANGES_FILE=os.getenv("EDGE_RANGES_FILE", ""),
    GEOIP_MMDB=os.getenv("GEOIP_MMDB", ""),
)
app.config["RANGE_REGISTRY"] = load_registry(app.config["EDGE_RANGES_FILE"])

CDN_HEADERS = ["CF-Ray", "CF-Connecting-IP", "CF-IPCountry", "CF-Visitor", "CF-Request-ID"]

SECURITY_HEADERS = {
    "Strict-Transport-Security": "Forces HTTPS connections. Enable via Cloudflare HSTS.",
    "X-Content-Type-Options": "Prevents MIME type sniffing. Add via Cloudflare Page Rules or Workers.",
    "X-Frame-Options": "Prevents clickjacking. Cloudflare can add this via Transform Rules.",
    "X-XSS-Protection": "Legacy XSS protection (modern browsers use CSP instead).",
    "Content-Security-Policy": "Controls which resources can load. Advanced security feature.",
}

# ----------------------------- Request context -----------------------------

def _peer_socket():
    sock = request.environ.get("werkzeug.socket")
    return sock if hasattr(sock, "getpeercert") else None

def _rdn_map(rdns) -> Dict[str, str]:
    # ssl.getpeercert() gives ((("commonName", "x"),), (("organizationName", "y"),), ...)
    out: Dict[str, str] = {}
    for rdn in rdns or ():
        for pair in rdn:
            if len(pair) == 2: out[pair[0]] = pair[1]
    return out

def _peer_certificate() -> Optional[Dict[str, Any]]:
    sock = _peer_socket()
    if sock is None: return None
    try:
        cert = sock.getpeercert()
    except (OSError, ValueError) as exc:
        log.debug("getpeercert failed: %s", exc)
        return None
    if not cert: return None
    out: Dict[str, Any] = {k: v for k, v in cert.items() if k not in ("subject", "issuer", "notBefore", "notAfter")}
    out.update({"subject": _rdn_map(cert.get("subject")), "issuer": _rdn_map(cert.get("issuer")),
                "valid_from": cert.get("notBefore"), "valid_to": cert.get("notAfter")})
    return out

def _tls_version() -> Optional[str]:
    sock = _peer_socket()
    if sock is None or not hasattr(sock, "version"): return None
    try:
        return sock.version()
    except (OSError, ValueError):
        return None

def _remote_address() -> Optional[str]:
    ip = normalize_address(request.remote_addr)
    return ip.compressed if ip else request.remote_addr

def build_context() -> RequestSecurityContext:
    secure = request.environ.get("wsgi.url_scheme") == "https"
    return RequestSecurityContext(
        remote_address=_remote_address(),
        headers=Headers(list(request.headers.items())),
        transport_secure=secure,
        declared_protocol=request.scheme,
        peer_certificate=_peer_certificate() if secure else None,
        tls_version=_tls_version() if secure else None,
    )

def _evaluator() -> ProtectionEvaluator:
    return ProtectionEvaluator(current_app.config["RANGE_REGISTRY"], current_app.config["TRACE_HEADER"])

def _now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

# ----------------------------- GeoIP -----------------------------

def geoip_lookup(ip_txt: Optional[str]) -> Optional[Dict[str, Any]]:
    mmdb = current_app.config.get("GEOIP_MMDB")
    if not ip_txt or not mmdb: return None
    try:
        import geoip2.database
        import geoip2.errors
        import maxminddb
    except ImportError as exc:
        log.debug("GeoIP lookup unavailable: %s", exc)
        return None
    try:
        with geoip2.database.Reader(mmdb) as reader:
            city = reader.city(ip_txt)
    except geoip2.errors.AddressNotFoundError:
        return None
    except (OSError, ValueError, maxminddb.InvalidDatabaseError) as exc:
        log.debug("GeoIP lookup in %s failed: %s", mmdb, exc)
        return None
    return {"country": city.country.iso_code, "city": city.city.name}

# ----------------------------- Format negotiation -----------------------------

def _preferred_format() -> str:
    fmt = (request.args.get('format') or '').lower()
    if fmt in ('json','html'): return fmt
    accept = request.headers.get('Accept','')
    ua = (request.headers.get('User-Agent','') or '').lower()
    cli_markers = ('curl/','wget/','httpie','python-requests','aiohttp','okhttp','node-fetch','axios','postman','insomnia','powershell','go-http-client','libcurl')
    if any(m in ua for m in cli_markers): return 'json'
    if 'application/json' in accept and 'text/html' not in accept: return 'json'
    return 'html'

def _request_id() -> str:
    return request.headers.get("X-Request-Id") or str(uuid.uuid4())

def _finish(resp: Response) -> Response:
    resp.headers['X-Request-Id'] = _request_id()
    resp.headers['Server'] = SERVER_NAME
    return resp

def _respond(template: str, payload: Dict[str, Any]) -> Response:
    if _preferred_format() == 'json':
        return _finish(make_response(jsonify(payload)))
    raw_json = json.dumps(payload, ensure_ascii=False, indent=2)
    return _finish(make_response(render_template(template, **payload, raw_json=raw_json)))

# ----------------------------- Payload builders -----------------------------

def ssl_status(ctx: RequestSecurityContext) -> Dict[str, Any]:
    report = inspect_transport(ctx)
    trace_header = current_app.config["TRACE_HEADER"]
    return {
        **report.to_dict(),
        "behind_proxy": is_proxied(ctx.headers, trace_header),
        "protocol": ctx.declared_protocol,
        "headers": {
            "X-Forwarded-Proto": ctx.header("X-Forwarded-Proto"),
            "CF-Visitor": ctx.header("CF-Visitor"),
            trace_header: ctx.header(trace_header),
        },
    }

def protection_status(ctx: RequestSecurityContext) -> Dict[str, Any]:
    evaluator = _evaluator()
    verdict = evaluator.evaluate(ctx)
    return {
        **verdict.to_dict(),
        "source_ip": ctx.remote_address,
        "client_ip": ctx.header("CF-Connecting-IP"),
        "trace_id": ctx.header(evaluator.trace_header),
        "ranges_version": evaluator.registry.version,
        "timestamp": _now_iso(),
    }

def security_headers(ctx: RequestSecurityContext) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for name, why in SECURITY_HEADERS.items():
        val = ctx.header(name)
        rows.append({"header": name, "present": val is not None, "value": val, "explanation": why})
    return rows

# ----------------------------- Endpoints -----------------------------

@app.route("/health", methods=["GET","HEAD"])
@app.route("/healthz", methods=["GET","HEAD"])
def health():
    ctx = build_context()
    report = inspect_transport(ctx)
    return _finish(make_response(jsonify({
        "status": "healthy",
        "version": SERVICE_VERSION,
        "https": report.logically_secure,
        "behind_proxy": is_proxied(ctx.headers, current_app.config["TRACE_HEADER"]),
        "timestamp": _now_iso(),
    })))

@app.route("/api/ssl-status", methods=["GET"])
def api_ssl_status():
    return _finish(make_response(jsonify(ssl_status(build_context()))))

@app.route("/api/headers", methods=["GET"])
def api_headers():
    ctx = build_context()
    return _finish(make_response(jsonify({
        "behind_proxy": is_proxied(ctx.headers, current_app.config["TRACE_HEADER"]),
        "cdn_headers": {h: ctx.header(h) for h in CDN_HEADERS},
        "request_info": {
            "hostname": request.host.split(':', 1)[0],
            "protocol": ctx.declared_protocol,
            "method": request.method,
            "path": request.path,
            "ip": ctx.remote_address,
            "real_ip": ctx.header("CF-Connecting-IP", ctx.remote_address),
        },
        "all_headers": {k: v for k, v in ctx.headers.items()},
        "timestamp": _now_iso(),
    })))

@app.route("/api/protection-status", methods=["GET"])
def api_protection_status():
    return _finish(make_response(jsonify(protection_status(build_context()))))

@app.route("/", methods=["GET"])
def root():
    ctx = build_context()
    payload = {
        "ssl": ssl_status(ctx),
        "cdn": {h: ctx.header(h) for h in CDN_HEADERS},
        "request_headers": {k: v for k, v in ctx.headers.items()},
        "hostname": request.host.split(':', 1)[0],
        "url": f"{ctx.declared_protocol}://{request.host}{request.path}",
    }
    return _respond("index.html", payload)

@app.route("/origin-protection", methods=["GET"])
def origin_protection():
    ctx = build_context()
    payload = {"protection": protection_status(ctx),
               "request_headers": {k: v for k, v in ctx.headers.items()}}
    return _respond("origin_protection.html", payload)

@app.route("/cert-info", methods=["GET"])
def cert_info():
    ctx = build_context()
    report = inspect_transport(ctx)
    cert = report.certificate
    payload = {
        **report.to_dict(),
        "certificate_raw": cert.raw if cert else None,
    }
    return _respond("cert_info.html", payload)

@app.route("/security-headers", methods=["GET"])
def security_headers_page():
    ctx = build_context()
    return _respond("security_headers.html", {"security_headers": security_headers(ctx)})

@app.route("/mixed-content-test", methods=["GET"])
def mixed_content_test():
    ctx = build_context()
    payload = {"https": inspect_transport(ctx).logically_secure,
               "protocol": ctx.declared_protocol,
               "hostname": request.host.split(':', 1)[0]}
    return _respond("mixed_content.html", payload)

@app.route("/geo", methods=["GET"])
def geo():
    ctx = build_context()
    proxied = is_proxied(ctx.headers, current_app.config["TRACE_HEADER"])
    if proxied:
        location = {"country": ctx.header("CF-IPCountry", "Unknown"),
                    "city": ctx.header("CF-IPCity", "Unknown"),
                    "ip": ctx.header("CF-Connecting-IP", ctx.remote_address),
                    "source": "edge_headers"}
    else:
        found = geoip_lookup(ctx.remote_address)
        location = {**found, "ip": ctx.remote_address, "source": "geoip"} if found else None
    return _respond("geo.html", {"behind_proxy": proxied, "location": location})

@app.route("/test", methods=["GET"])
def subdomain_test():
    hostname = request.host.split(':', 1)[0]
    return _finish(make_response(jsonify({
        "message": "Subdomain test successful",
        "subdomain": hostname.split('.')[0],
        "hostname": hostname,
        "timestamp": _now_iso(),
    })))

# ----------------------------- Server bootstrap -----------------------------

def tls_context(cert_path: str, key_path: str, client_ca: str = "") -> Optional[ssl.SSLContext]:
    """Server TLS context, or None when the key material is missing or unusable."""
    if not (os.path.isfile(cert_path) and os.path.isfile(key_path)):
        log.warning("SSL certificates not found, running HTTP only (expected %s and %s)", cert_path, key_path)
        return None
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        ctx.load_cert_chain(cert_path, key_path)
        if client_ca:
            # Authenticated origin pulls: the edge presents a client certificate.
            ctx.load_verify_locations(client_ca)
            ctx.verify_mode = ssl.CERT_OPTIONAL
    except (OSError, ssl.SSLError) as exc:
        log.warning("Could not load TLS material, running HTTP only: %s", exc)
        return None
    return ctx

def main():
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "80"))
    https_port = int(os.getenv("HTTPS_PORT", "443"))
    ssl_ctx = tls_context(os.getenv("SSL_CERT_PATH", "/etc/ssl/cloudflare/cert.pem"),
                          os.getenv("SSL_KEY_PATH", "/etc/ssl/cloudflare/key.pem"),
                          os.getenv("CLIENT_CA_PATH", ""))
    registry = app.config["RANGE_REGISTRY"]
    log.info("Edge range table %s: %d blocks", registry.version, len(registry))

    if ssl_ctx is not None:
        https_server = make_server(host, https_port, app, threaded=True, ssl_context=ssl_ctx)
        threading.Thread(target=https_server.serve_forever, name="https", daemon=True).start()
        log.info("HTTPS server running on https://%s:%d", host, https_port)

    http_server = make_server(host, port, app, threaded=True)
    log.info("HTTP server running on http://%s:%d (not encrypted)", host, port)
    http_server.serve_forever()

if __name__ == "__main__":
    main()
