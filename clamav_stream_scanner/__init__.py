"""ClamAV stream scanner: attachment scanning with the clamd STREAM command.

The scanning itself lives in the `clamd` subpackage; this module is a
small REST application which scans uploaded attachments with it.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your service is adequately protected.

The following variables are accepted:

 - CLAMAV_ATTACHMENTS_SCAN_ENABLED : enable attachment scanning
    (true/false, default false)
 - CLAMAV_ATTACHMENTS_SCAN_URL : clamd url like clam://host:port/
    (default clam://localhost:3310/)
 - CLAMAV_ATTACHMENTS_SCAN_TIMEOUT : timeout in seconds of each socket
    operation with clamd (default 300)

"""
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .clamd import ClamScanner, InvalidEndpoint, ScanVerdict
from .clamd.scanner import DISABLED_MESSAGE

##
# Init app and config
##

app = Flask(__name__)

# load all env starting with CLAMAV_ and make them available in
# app.config without CLAMAV_
app.config.from_prefixed_env("CLAMAV")

# fix gunicorn logging
if __name__ != '__main__':
    gunicorn_logger = logging.getLogger('gunicorn.error')
    app.logger.handlers = gunicorn_logger.handlers[:]
    app.logger.setLevel(gunicorn_logger.level)
    app.logger.propagate = False

# shared by all requests, each scan opens its own connections
scanner = ClamScanner()

##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "ClamAV stream scanner"
    swag['info']['description'] = \
        "Attachment scanning with clamd STREAM command via REST API"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
def health():
    """Report whether attachment scanning is enabled.
    ---
    tags:
      - status
    responses:
      200:
        description: Scanner status
        content: application/json
        schema:
          type: object
          properties:
            enabled:
              type: boolean
              description: Whether attachment scanning is enabled
              example: true
            endpoint:
              type: string
              description: clamd host and port, if configured
              example: localhost:3310
    """
    endpoint = scanner.endpoint
    return {
        "enabled": scanner.is_enabled(),
        "endpoint": str(endpoint) if endpoint is not None else None,
    }


@app.route("/api/v1/attachments/scan", methods=["POST"])
def scan_attachment():
    """Scan an attachment.

    The attachment is either a multipart "file" field or the raw body
    of the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: Attachment to scan
        required: false
    responses:
      200:
        description: Scanning verdict
        content: application/json
        schema:
          type: object
          properties:
            verdict:
              type: string
              description: Verdict of the scanning {ACCEPT,REJECT,ERROR}
              example: REJECT
            info:
              type: string
              description: clamd answer, or error description
              example: Win.Test.EICAR_HDB-1 FOUND
            input_file:
              type: string
              description: Name of the attachment, if any
              example: myfile.txt
            file_size:
              type: integer
              description: Size of the attachment scanned in bytes
              example: 256
      500:
        description: No verdict could be obtained from clamd
      503:
        description: Attachment scanning is disabled
    """
    if 'file' in request.files:
        attachment = request.files['file']
        filename = attachment.filename
        payload = attachment.stream
    else:
        filename = None
        payload = request.get_data()
        if not payload:
            return {"error": "No file attached"}, 400

    if not scanner.is_enabled():
        return {"error": DISABLED_MESSAGE}, 503

    # sanitize filename to prevent log injection
    safe_filename = (filename or "<body>").replace('\r', '').replace('\n', '')

    app.logger.debug("Starting scan for attachment \"%s\"", safe_filename)
    result = scanner.scan(payload)
    if result.verdict == ScanVerdict.ERROR and result.info == DISABLED_MESSAGE:
        # disabled by a reconfiguration after the check above
        return {"error": DISABLED_MESSAGE}, 503

    if isinstance(payload, bytes):
        file_size = len(payload)
    else:
        # the stream has been read to the end, so tell() will give us
        # the size in bytes
        file_size = payload.tell()
    app.logger.info("Scanned attachment \"%s\" (%d bytes) with verdict %s",
                    safe_filename, file_size, result.verdict.value)

    resp_body = {
        "verdict": result.verdict.value,
        "info": result.info,
        "input_file": filename,
        "file_size": file_size,
    }

    if result.verdict == ScanVerdict.ERROR:
        # no trustworthy verdict, the caller must not take it as clean
        app.logger.error("Unable to scan attachment \"%s\": %s",
                         safe_filename, result.info)
        status_code = 500
    else:
        status_code = 200

    return resp_body, status_code


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(Exception)
def handle_exception(e):
    """Handle an generic exception and return JSON.
    """
    str_e = str(e)
    app.logger.exception("Generic exception: %s", str_e)
    return {"error": str_e}, 500


##
# Helpers
##


def configure_scanner() -> None:
    """(Re)configure the shared scanner from app config.

    An invalid clamd url leaves attachment scanning disabled.
    """
    # remember, these are env variables prefixed with CLAMAV_
    enabled = config_bool("ATTACHMENTS_SCAN_ENABLED")
    url = app.config.get("ATTACHMENTS_SCAN_URL")
    timeout = float(app.config.get("ATTACHMENTS_SCAN_TIMEOUT", 300))

    try:
        scanner.configure(url, enabled=enabled, timeout=timeout)
    except InvalidEndpoint as e:
        app.logger.error("error creating scanner: %s", str(e))


def config_bool(env_name: str) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    val = app.config.get(env_name, False)
    if isinstance(val, bool):
        # from_prefixed_env already parsed it as JSON
        return val
    val = str(val).strip().lower()
    return val in ["true", "1", "enable", "enabled"]


configure_scanner()

##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
