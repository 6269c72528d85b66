"""ClamAV scan service is a REST interface for ClamAV daemon.

The ClamAV daemon (clamd) can be either reached via Unix domain socket
or TCP socket.  This behaviour can be specified via configuration.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your ClamAV scan service is adequately protected.

The following variables are accepted:

 - CLAMAV_CLAMD_SOCKET_PATH : application will connect to clamd
    running on Unix socket at path specified.
 - CLAMAV_CLAMD_HOST : application will connect to clamd running on TCP
    socket at host specified; also CLAMAV_CLAMD_PORT is expected
 - CLAMAV_CLAMD_PORT : use with CLAMAV_CLAMD_HOST
 - CLAMAV_CLAMD_CONNECTION_TIMEOUT : connect timeout in milliseconds
 - CLAMAV_CLAMD_READ_TIMEOUT : read timeout in milliseconds
 - CLAMAV_INCLUDE_RAW_DATA : include clamd raw response in scan result

"""
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import BadRequest, HTTPException

from .clamd import Clamd, ClamdTCPSocket, ClamdUnixSocket, \
    ClamdError, ClamdCommunicationError, ClamdScanFailureError
from .clamd.client import DEFAULT_CONNECTION_TIMEOUT, DEFAULT_READ_TIMEOUT

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
    if gunicorn_logger.handlers:
        app.logger.handlers = gunicorn_logger.handlers[:]
        app.logger.setLevel(gunicorn_logger.level)
        app.logger.propagate = False

##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "ClamAV scan service"
    swag['info']['description'] = \
        "File scanning with ClamAV via REST API"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
@app.route("/api/v1/clamav/ping", methods=["GET"])
def ping():
    """Ping clamav ensuring connection is up.
    ---
    tags:
      - status
    responses:
      200:
        description: Pong
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the ping
              example: OK
            message:
              type: string
              description: Message returned by clamav on ping command
              example: PONG
      503:
        description: clamd not reachable or not answering
    """
    app.logger.debug("Pinging clamd...")
    clamd = clamd_instance()
    pong = clamd.ping()
    log_last_command(clamd)

    if pong:
        return {"status": "OK", "message": "PONG"}, 200
    return {"status": "KO", "message": "No PONG from clamd"}, 503


@app.route("/api/v1/clamav/scan", methods=["POST"])
def scan_file():
    """Scan a file attached to the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: File to scan
        required: true
    responses:
      200:
        description: Scanning result
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the scanning {OK,FOUND}
              example: FOUND
            input_file:
              type: string
              description: Input file that was scanned
              example: myfile.txt
            viruses:
              type: array
              description: Signatures of the viruses found, if any
              example: [Name-Of-Virus-Found]
            file_size:
              type: integer
              description: Size of the file scanned in bytes
              example: 256
            elapsed_ms:
              type: integer
              description: Time spent talking to clamd
      500:
        description: clamd reported a scan error
    """
    file_to_analyze = request.files.get("file")
    if file_to_analyze is None:
        raise BadRequest("Missing 'file' in multipart form data")

    filename = file_to_analyze.filename or "stream"
    # avoid log injection
    safe_filename = filename.replace('\r\n', '').replace('\n', '')

    app.logger.debug("Starting scan for file \"%s\"", safe_filename)
    clamd = clamd_instance()
    # we send an open stream to the clamd instance
    result = clamd.scan_stream(file_to_analyze.stream)

    # the file pointer is at the end of the stream, so tell() will
    # give us the size in bytes
    file_size = file_to_analyze.stream.tell()
    viruses = [sig for sigs in result.virus_found.values() for sig in sigs]
    status = "OK" if result.is_ok() else "FOUND"
    app.logger.info("Scanned file \"%s\" (%d bytes) with status %s - %s",
                    safe_filename, file_size, status,
                    ", ".join(viruses) or "no virus")
    details = log_last_command(clamd)

    # pack the response
    resp_body = {
        "status": status,
        # the scanned object is always "stream" as returned by clamd
        # INSTREAM command, use what the client told us about the file
        "input_file": filename,
        "viruses": viruses,
        "file_size": file_size,
        "elapsed_ms": details.elapsed_millis if details else None,
    }
    if config_bool("INCLUDE_RAW_DATA") and details is not None:
        app.logger.warning("Including raw data in scan response. "
                           "Use this option only for debugging")
        resp_body["raw_data"] = details.response

    return resp_body, 200


@app.route("/api/v1/clamav/stats", methods=["GET"])
def stats():
    """Get clamav stats.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV stats
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV stats message
    """
    app.logger.debug("Requesting clamd stats...")
    clamd = clamd_instance()
    message = clamd.stats()
    log_last_command(clamd)

    return {"message": message}


@app.route("/api/v1/clamav/version", methods=["GET"])
def clamav_version():
    """Get version of connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV version
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV version message
              example: ClamAV 1.4.2
    """
    return {"message": clamd_instance().version()}


@app.route("/api/v1/clamav/commands", methods=["GET"])
def clamav_commands():
    """Get the commands supported by the connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV commands
        content: application/json
        schema:
          type: object
          properties:
            commands:
              type: array
              description: Commands accepted by clamd
              example: [SCAN, INSTREAM, VERSION]
    """
    return {"commands": clamd_instance().version_commands()}


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [400, 404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(ClamdError)
def handle_clamd_error(e):
    """Handle an error talking to clamd and return JSON.
    """
    str_e = str(e)
    if isinstance(e, ClamdCommunicationError):
        app.logger.error("Unable to reach clamd: %s", str_e)
        status_code = 503
    elif isinstance(e, ClamdScanFailureError):
        app.logger.error("Detected clamd error: %s", str_e)
        status_code = 500
    else:
        # unknown command or response we are unable to parse
        app.logger.error("Unexpected clamd response: %s", str_e)
        status_code = 502
    return {"error": str_e}, status_code


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


def clamd_instance() -> Clamd:
    """Get a clamd client based on app config.
    """
    # remember, these are env variables prefixed with CLAMAV_
    host = app.config.get("CLAMD_HOST")
    port = app.config.get("CLAMD_PORT")
    connection_timeout = config_int("CLAMD_CONNECTION_TIMEOUT",
                                    DEFAULT_CONNECTION_TIMEOUT)
    read_timeout = config_int("CLAMD_READ_TIMEOUT", DEFAULT_READ_TIMEOUT)

    if host is not None and port is not None:
        return Clamd(ClamdTCPSocket(
            host=host,
            port=int(port),
            connection_timeout_millis=connection_timeout,
            read_timeout_millis=read_timeout,
        ))

    socket_path = app.config.get("CLAMD_SOCKET_PATH") or "/tmp/clamd.sock"
    return Clamd(ClamdUnixSocket(
        socket_path,
        connection_timeout_millis=connection_timeout,
        read_timeout_millis=read_timeout,
    ))


def log_last_command(clamd: Clamd):
    """Log the diagnostics of the last command sent to clamd.
    """
    details = clamd.last_command_run_details()
    if details is not None:
        app.logger.debug("%s", details)
    return details


def config_bool(env_name: str) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    val = str(app.config.get(env_name, "false")).strip().lower()
    return val in ["true", "1", "enable", "enabled"]


def config_int(env_name: str, default: int) -> int:
    """Given a config var name, try to parse as integer.
    """
    val = app.config.get(env_name)
    if val is None or val == "":
        return default
    return int(val)


##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
