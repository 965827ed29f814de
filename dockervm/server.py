"""Server operations: SSH, remote convergence runner and HTTP verification."""

import time
import urllib.error
import urllib.request

from fabric import Connection
from invoke.exceptions import CommandTimedOut

from .bootstrap import StepTimeout
from .utils import LogStream, error, log, shell_quote, warn

SSH_TIMEOUT = 600
HTTP_VERIFY_RETRIES = 12
HTTP_VERIFY_DELAY = 10


def _connect(ip: str, user: str, timeout: int | None = None) -> Connection:
    connect_kwargs = {"look_for_keys": True}
    if timeout is not None:
        connect_kwargs["timeout"] = timeout
    return Connection(ip, user=user, connect_kwargs=connect_kwargs)


def check_instance_reachable(ip: str, ssh_user: str = "ubuntu", timeout: int = 10) -> bool:
    """Quick check if instance is reachable via SSH.

    :param ip: Instance IP address
    :param ssh_user: SSH user for connection
    :param timeout: Connection timeout in seconds
    :return: True if reachable, False otherwise
    """
    try:
        with _connect(ip, ssh_user, timeout) as c:
            c.run("echo ping", hide=True, in_stream=False)
        return True
    except Exception:
        return False


def wait_for_ssh(ip: str, user: str = "ubuntu", timeout: int = SSH_TIMEOUT):
    log(f"Waiting for SSH on '{ip}'...")
    start = time.time()
    while time.time() - start < timeout:
        try:
            with _connect(ip, user, 5) as c:
                c.run("echo ok", hide=True, in_stream=False)
                log("SSH ready")
                return
        except Exception as e:
            elapsed = int(time.time() - start)
            log(f"SSH not ready yet ({elapsed}s, {type(e).__name__}), retrying...")
        time.sleep(5)
    error(f"SSH timeout after '{timeout}s'")


class SSHRunner:
    """Run convergence steps on a remote host over SSH with sudo.

    :param ip: Host IP address
    :param user: SSH user with passwordless sudo (ubuntu on the default AMI)
    """

    def __init__(self, ip: str, user: str = "ubuntu"):
        self.ip = ip
        self.user = user

    def run(self, command: str, timeout: int) -> tuple[int, str]:
        stream = LogStream()
        with _connect(self.ip, self.user) as c:
            try:
                result = c.run(
                    f"sudo bash -c {shell_quote(command)}",
                    warn=True,
                    in_stream=False,
                    out_stream=stream,
                    err_stream=stream,
                    timeout=timeout,
                )
            except CommandTimedOut:
                raise StepTimeout(f"timed out after {timeout}s") from None
            finally:
                stream.flush()
        return result.exited, (result.stdout + result.stderr).strip()


def check_http_status(url: str, timeout: int = 5) -> tuple[int | None, str]:
    """:return: (status_code, response_text) or (None, error_message)"""
    try:
        req = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(req, timeout=timeout) as response:
            status_code = response.getcode()
            return status_code, f"HTTP {status_code} {response.reason}"
    except urllib.error.HTTPError as e:
        return e.code, f"HTTP {e.code} {e.reason}"
    except (urllib.error.URLError, OSError) as e:
        return None, str(e)


def verify_http(
    ip: str,
    port: int = 8080,
    retries: int = HTTP_VERIFY_RETRIES,
    delay: float = HTTP_VERIFY_DELAY,
) -> bool:
    """Poll the host until the web port answers with a 2xx or 3xx status.

    :return: True once reachable, False after all retries fail
    """
    url = f"http://{ip}:{port}/"
    log(f"Verifying HTTP connectivity via '{url}'...")
    for i in range(retries):
        status_code, response_line = check_http_status(url)
        if status_code is not None and 200 <= status_code < 400:
            log(f"HTTP connectivity verified ({response_line})")
            return True
        warn(f"Cannot connect to '{url}' ({i + 1}/{retries}): {response_line}")
        if i < retries - 1:
            time.sleep(delay)
    return False
