import argparse
import csv
import dataclasses
import glob
import http.client
import os
import queue
import re
import socket
import ssl
import sys
import tempfile
import threading
import time
import logging
from typing import Callable, TextIO
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID


__version__ = "1.0.0"

DEFAULT_THREADS = 5
DEFAULT_TIMEOUT = 40.0
LOG_RETENTION_DAYS = 30

# Whitespace here is ASCII only: tab, newline, form feed, carriage return, space.
URL_PATTERN = re.compile(r"https://[^\t\n\f\r ]+")

# Put on the record queue once every fetch task has finished.
QUEUE_CLOSED = None


class SSLExplorerError(Exception):
    pass


class InputFileError(SSLExplorerError):
    """The URL input file could not be opened or read."""


class FetchError(SSLExplorerError):
    """A single URL could not be fetched. The rest of the batch carries on."""


class FetchConnectionError(FetchError):
    pass


class FetchTimeoutError(FetchError):
    pass


class RecordWriteError(SSLExplorerError):
    pass


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    timeout: float = DEFAULT_TIMEOUT
    user_agent: str = f"SSLExplorer/{__version__}"
    connection_factory: Callable[..., http.client.HTTPSConnection] = http.client.HTTPSConnection

    def ssl_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context


DEFAULT_CLIENT_CONFIG = ClientConfig()


@dataclasses.dataclass(frozen=True)
class CertificateRecord:
    url: str
    common_name: str
    sans: frozenset[str]

    def as_row(self) -> list[str]:
        return [self.url, self.common_name, "\n".join(sorted(self.sans))]

    def render(self) -> str:
        url, common_name, sans = self.as_row()
        return f"URL: {url}\nCommon Name: {common_name}\nSANs:\n{sans}\n"


@dataclasses.dataclass(frozen=True)
class SinkSummary:
    records_written: int
    write_errors: int


def clean_url(url: str) -> str:
    return url.rstrip(",")


def extract_urls(path: str) -> list[str]:
    urls: list[str] = []
    try:
        # Lines end at "\n" only; undecodable bytes are replaced, not fatal.
        with open(path, "rb") as handle:
            for raw in handle:
                match = URL_PATTERN.search(raw.decode("utf-8", "replace"))
                if match:
                    urls.append(match.group(0))
    except OSError as exc:
        raise InputFileError(f"{path}: {exc}") from exc
    return urls


def read_urls(url: str | None = None, input_path: str | None = None) -> list[str]:
    """Return the single ``url`` when given, otherwise the URLs found in ``input_path``."""
    if url:
        return [url]
    if not input_path:
        raise InputFileError("no input file given")
    return extract_urls(input_path)


def _common_name(cert: x509.Certificate) -> str:
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return ""
    # Several CNs are legal; the last one is the one reported.
    value = attributes[-1].value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return value


def _dns_names(cert: x509.Certificate) -> list[str]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return extension.value.get_values_for_type(x509.DNSName)


def extract_record(url: str, cert_der: bytes) -> CertificateRecord:
    try:
        cert = x509.load_der_x509_certificate(cert_der)
        common_name = _common_name(cert)
        names = set(_dns_names(cert))
    except ValueError as exc:
        raise FetchConnectionError(f"unable to decode certificate: {exc}") from exc
    names.discard(common_name)
    return CertificateRecord(url=url, common_name=common_name, sans=frozenset(names))


def _remaining(deadline: float) -> float:
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise TimeoutError("deadline exceeded")
    return remaining


def _request_target(path: str, query: str) -> str:
    target = path or "/"
    if query:
        target = f"{target}?{query}"
    return target


def fetch_certificate(
    url: str, config: ClientConfig = DEFAULT_CLIENT_CONFIG
) -> CertificateRecord | None:
    """Make one unverified HTTPS request to ``url`` and return its leaf certificate record.

    Returns ``None`` when there is nothing to extract: the URL is not https, or
    the server completed the handshake without presenting a certificate.

    Once the TLS handshake has completed the certificate is kept, so a failure
    later in the HTTP exchange does not lose it.
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port or 443
    except ValueError as exc:
        raise FetchConnectionError(f"invalid URL: {exc}") from exc
    if parts.scheme.lower() != "https":
        logging.debug("No TLS for %s (scheme %r)", url, parts.scheme)
        return None
    if not host:
        raise FetchConnectionError("invalid URL: missing host")

    deadline = time.monotonic() + config.timeout
    try:
        conn = config.connection_factory(
            host, port, timeout=config.timeout, context=config.ssl_context()
        )
    except http.client.HTTPException as exc:
        raise FetchConnectionError(f"invalid URL: {exc}") from exc
    handshake_done = False
    cert_der: bytes | None = None
    try:
        conn.connect()
        handshake_done = True
        cert_der = conn.sock.getpeercert(binary_form=True)

        conn.sock.settimeout(_remaining(deadline))
        conn.request(
            "GET",
            _request_target(parts.path, parts.query),
            headers={
                "User-Agent": config.user_agent,
                "Accept-Encoding": "identity",
                "Connection": "close",
            },
        )
        conn.sock.settimeout(_remaining(deadline))
        # Redirects are not followed: the first response is the only one.
        response = conn.getresponse()
        logging.debug("%s answered %s %s", url, response.status, response.reason)
        response.close()
    except (OSError, ValueError, http.client.HTTPException) as exc:
        if not handshake_done:
            if isinstance(exc, (TimeoutError, socket.timeout)):
                raise FetchTimeoutError(f"timed out after {config.timeout:g}s") from exc
            raise FetchConnectionError(str(exc) or exc.__class__.__name__) from exc
        logging.debug("Request to %s failed after handshake: %s", url, exc)
    finally:
        conn.close()

    if not cert_der:
        logging.debug("No peer certificate from %s", url)
        return None
    return extract_record(url, cert_der)


def process_url(
    url: str,
    semaphore: threading.BoundedSemaphore,
    record_queue: queue.Queue,
    fetch: Callable[[str], CertificateRecord | None],
    status_stream: TextIO | None = None,
) -> None:
    status_stream = status_stream or sys.stdout
    cleaned_url = clean_url(url)
    try:
        record = fetch(cleaned_url)
        if record is not None:
            record_queue.put(record)
    except FetchError as exc:
        print(f"Error processing URL {cleaned_url}: {exc}", file=status_stream)
        logging.warning("Error processing URL %s: %s", cleaned_url, exc)
    except Exception as exc:
        print(f"Error processing URL {cleaned_url}: {exc}", file=status_stream)
        logging.exception("Unexpected error processing URL %s", cleaned_url)
    finally:
        semaphore.release()


def dispatch(
    urls: list[str],
    threads: int,
    record_queue: queue.Queue,
    fetch: Callable[[str], CertificateRecord | None] = fetch_certificate,
    status_stream: TextIO | None = None,
) -> int:
    tasks: list[threading.Thread] = []
    try:
        if threads < 1:
            raise ValueError("threads must be at least 1")
        semaphore = threading.BoundedSemaphore(threads)
        for url in urls:
            semaphore.acquire()
            task = threading.Thread(
                target=process_url,
                args=(url, semaphore, record_queue, fetch, status_stream),
                daemon=True,
            )
            try:
                task.start()
            except RuntimeError:
                semaphore.release()
                raise
            tasks.append(task)
        for task in tasks:
            task.join()
    finally:
        record_queue.put(QUEUE_CLOSED)
    return len(tasks)


def write_record(writer, record: CertificateRecord) -> None:
    try:
        writer.writerow(record.as_row())
    except (csv.Error, OSError) as exc:
        raise RecordWriteError(str(exc)) from exc


def write_results(
    record_queue: queue.Queue,
    output_stream: TextIO,
    status_stream: TextIO | None = None,
) -> SinkSummary:
    status_stream = status_stream or sys.stdout
    writer = csv.writer(output_stream)
    written = 0
    errors = 0
    while True:
        record = record_queue.get()
        if record is QUEUE_CLOSED:
            break
        try:
            write_record(writer, record)
        except RecordWriteError as exc:
            errors += 1
            print(f"Error writing record to csv: {exc}", file=status_stream)
            logging.error("Error writing record for %s: %s", record.url, exc)
            continue
        written += 1
        print(record.render(), file=status_stream)

    try:
        output_stream.flush()
    except OSError as exc:
        print(f"Error writing csv: {exc}", file=status_stream)
        logging.error("Error flushing csv output: %s", exc)
    return SinkSummary(records_written=written, write_errors=errors)


def run_pipeline(
    urls: list[str],
    threads: int,
    output_stream: TextIO,
    status_stream: TextIO | None = None,
    fetch: Callable[[str], CertificateRecord | None] = fetch_certificate,
) -> SinkSummary:
    status_stream = status_stream or sys.stdout
    record_queue: queue.Queue = queue.Queue()
    producer = threading.Thread(
        target=dispatch,
        args=(urls, threads, record_queue, fetch, status_stream),
        daemon=True,
    )
    producer.start()
    summary = write_results(record_queue, output_stream, status_stream)
    producer.join()
    print(f"Processing complete. {len(urls)} URLs processed.", file=status_stream)
    logging.info(
        "Summary: submitted=%s records=%s write_errors=%s",
        len(urls),
        summary.records_written,
        summary.write_errors,
    )
    return summary


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid float value: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError("must be greater than 0")
    return number


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="sslexplorer",
        description=(
            "Fetch TLS certificate common names and SANs for HTTPS URLs and output CSV."
        ),
    )
    parser.add_argument(
        "-input",
        "--input",
        help="Input file with URLs (the first https:// URL on each line is used).",
    )
    parser.add_argument(
        "-output",
        "--output",
        help="Output file for saving results. Defaults to stdout.",
    )
    parser.add_argument(
        "-url",
        "--url",
        help="Single URL to process. Takes precedence over -input.",
    )
    parser.add_argument(
        "-threads",
        "--threads",
        type=_positive_int,
        default=DEFAULT_THREADS,
        help="Number of concurrent threads.",
    )
    parser.add_argument(
        "-timeout",
        "--timeout",
        type=_positive_float,
        default=DEFAULT_TIMEOUT,
        help="Overall timeout in seconds for each URL.",
    )
    parser.add_argument(
        "-log-dir",
        "--log-dir",
        default="logs",
        help="Directory for run logs.",
    )
    parser.add_argument(
        "-version",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser.parse_args(argv)


def _cleanup_old_logs(log_dir: str, max_age_days: int = LOG_RETENTION_DAYS) -> int:
    """Delete this tool's run logs older than ``max_age_days``; other files are left alone."""
    cutoff = time.time() - max_age_days * 86400
    removed = 0
    for log_path in glob.glob(os.path.join(glob.escape(log_dir), "scan_*.log")):
        try:
            if os.path.getmtime(log_path) >= cutoff:
                continue
            os.remove(log_path)
        except OSError:
            logging.exception("Could not remove stale run log %s", log_path)
            continue
        removed += 1
    return removed


def setup_logging(log_dir: str) -> str:
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(
        log_dir, f"scan_{time.strftime('%Y%m%d_%H%M%S', time.gmtime())}.log"
    )
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)sZ %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.FileHandler(log_path, encoding="utf-8")],
        force=True,
    )
    removed_logs = _cleanup_old_logs(log_dir)
    if removed_logs:
        logging.info(
            "Removed %s log file(s) older than %s days", removed_logs, LOG_RETENTION_DAYS
        )
    return log_path


def _publish_output(temp_path: str, output_path: str) -> None:
    # Temporary files are created 0600; give the result the usual umask mode.
    umask = os.umask(0)
    os.umask(umask)
    os.chmod(temp_path, 0o666 & ~umask)
    os.replace(temp_path, output_path)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_dir)
    logging.info("Run starting")
    logging.info("Args: %s", vars(args))

    if not args.url and not args.input:
        print(
            "Please specify an input file using -input=<filename> "
            "or a single URL using -url=<URL>"
        )
        logging.error("Neither -url nor -input given")
        return 0

    try:
        urls = read_urls(url=args.url, input_path=args.input)
    except InputFileError as exc:
        print(f"Error reading URLs: {exc}")
        logging.error("Error reading URLs: %s", exc)
        return 0
    logging.info("URLs: %s", len(urls))
    logging.info("Threads: %s", args.threads)

    config = dataclasses.replace(DEFAULT_CLIENT_CONFIG, timeout=args.timeout)

    def fetch(url: str) -> CertificateRecord | None:
        return fetch_certificate(url, config)

    output_stream = None
    temp_output_path = None
    if args.output:
        output_dir = os.path.dirname(os.path.abspath(args.output)) or "."
        try:
            temp_file = tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                newline="",
                delete=False,
                dir=output_dir,
                prefix=".sslexplorer_tmp_",
                suffix=".csv",
            )
        except OSError as exc:
            print(f"Error creating output file: {exc}")
            logging.error("Error creating output file %s: %s", args.output, exc)
            return 0
        temp_output_path = temp_file.name
        output_stream = temp_file
    else:
        output_stream = sys.stdout

    try:
        run_pipeline(urls, args.threads, output_stream, sys.stdout, fetch=fetch)
    except BaseException:
        if temp_output_path is not None:
            output_stream.close()
            os.unlink(temp_output_path)
            logging.error("Run aborted, %s left unchanged", args.output)
        raise
    if temp_output_path is not None:
        output_stream.close()
        _publish_output(temp_output_path, args.output)

    logging.info("Run complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
