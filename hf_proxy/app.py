from flask import Flask, request, Response, jsonify
import logging
import os
import time

from hf_proxy.forwarder import (
    CORS_HEADERS,
    ErrorKind,
    ProxyError,
    fetch_upstream,
    outbound_method,
    pick_headers,
    resolve_target,
)
from hf_proxy.memory import DEFAULT_CONTEXT_SIZE, ModelFile, calculate_memory_usage

app = Flask(__name__)

# ---- config ---- #
LISTEN_HOST = os.getenv("PROXY_HOST", "0.0.0.0")
LISTEN_PORT = int(os.getenv("PROXY_PORT", "8081"))


def log_level(name):
    # unknown names fall back to INFO instead of failing at import
    name = (name or "INFO").upper()
    return name if isinstance(logging.getLevelName(name), int) else "INFO"


LOG_LEVEL = log_level(os.getenv("LOG_LEVEL"))
STREAM_CHUNK_SIZE = int(os.getenv("PROXY_CHUNK_SIZE", "65536"))

app.logger.setLevel(LOG_LEVEL)

METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


@app.after_request
def add_cors(resp):
    # overwrite, so upstream can't change or drop these
    for k, v in CORS_HEADERS.items():
        resp.headers[k] = v
    return resp


def error_response(err: ProxyError):
    app.logger.warning(f"{request.method} {request.path} -> {err.status} ({err.kind.value}): {err.message}")
    return Response(err.message, err.status, mimetype="text/plain")


def preflight():
    # CORS headers only, added by add_cors
    resp = Response(status=204)
    del resp.headers["Content-Type"]
    return resp


@app.route("/api/proxy", methods=METHODS)
def proxy():
    if request.method == "OPTIONS":
        return preflight()

    target = resolve_target(request.args.get("u"))
    if isinstance(target, ProxyError):
        return error_response(target)

    method = outbound_method(request.method)

    start = time.time()
    upstream = fetch_upstream(method, target, pick_headers(request.headers), STREAM_CHUNK_SIZE)
    elapsed = (time.time() - start) * 1000.0  # ms, headers only

    if isinstance(upstream, ProxyError):
        return error_response(upstream)

    app.logger.info(f"{method} {target} -> {upstream.status} in {elapsed:.2f} ms")

    # body is None for HEAD; passing bytes would reset content-length
    return Response(upstream.body, upstream.status, upstream.headers)


@app.route("/api/memory", methods=["GET", "OPTIONS"])
def memory():
    if request.method == "OPTIONS":
        return preflight()

    target = resolve_target(request.args.get("u"))
    if isinstance(target, ProxyError):
        return error_response(target)

    try:
        context_size = int(request.args.get("ctx", DEFAULT_CONTEXT_SIZE))
    except ValueError:
        context_size = 0
    if context_size <= 0:
        return error_response(ProxyError(ErrorKind.BAD_PARAMETER, "ctx must be a positive integer"))

    model_file = ModelFile.from_url(target, request.args.get("model", ""))

    start = time.time()
    usage = calculate_memory_usage(model_file, context_size)
    elapsed = (time.time() - start) * 1000.0

    app.logger.info(f"memory {target} ctx={context_size} -> {usage.display_string or 'no estimate'} in {elapsed:.2f} ms")

    return jsonify({
        "filename": model_file.filename,
        "quantization": model_file.quant.type,
        "description": model_file.quant.description,
        "contextSize": context_size,
        **usage.to_dict(),
    })


def main():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
    app.run(host=LISTEN_HOST, port=LISTEN_PORT)


if __name__ == "__main__":
    main()
