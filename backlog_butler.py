# /// script
# requires-python = "==3.12.*"
# dependencies = [
#   "httpx"
# ]
# ///


"""
Lists the work-item tags of an Azure DevOps project, sorted case-insensitively.

Read-only: authenticates with a Personal Access Token (PAT) and issues a single GET.
`--apply` only switches the printed mode label; no write actions exist yet.

Usage:
  uv run ./backlog_butler.py --org https://dev.azure.com/yourorg --project YourProject --pat YOUR_PAT

Or, with env vars (recommended, keeps the PAT out of shell history):
  export ADO_ORG="https://dev.azure.com/yourorg"
  export ADO_PROJECT="YourProject"
  export ADO_PAT="YOUR_PAT"
  uv run ./backlog_butler.py

Exit codes: 0 ok/help, 2 missing settings, 10 HTTP transport error, 11 anything else.
"""

import base64
import json
import logging
import os
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any
from urllib.parse import quote

import httpx

log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)


## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)
        lg.propagate = False


API_VERSION = '7.1'

ENV_ORG = 'ADO_ORG'
ENV_PROJECT = 'ADO_PROJECT'
ENV_PAT = 'ADO_PAT'

EXIT_OK = 0
EXIT_MISSING_SETTINGS = 2
EXIT_HTTP_ERROR = 10
EXIT_UNEXPECTED = 11

## flags are matched as whole tokens, case-insensitively
HELP_FLAGS: tuple[str, ...] = ('--help', '-h', '/?')

HELP_TEXT = """\
Usage:
  backlog-butler [--help] [--org <url>] [--project <name>] [--pat <token>] [--apply]

Examples (env vars recommended):
  export ADO_ORG="https://dev.azure.com/yourorg"
  export ADO_PROJECT="YourProject"
  export ADO_PAT="YOUR_PAT"
  uv run ./backlog_butler.py

Examples (args):
  uv run ./backlog_butler.py --org https://dev.azure.com/yourorg --project YourProject --pat YOUR_PAT

Options:
  --help        Show this help
  --org         Azure DevOps org URL (or env ADO_ORG)
  --project     Azure DevOps project name (or env ADO_PROJECT)
  --pat         Personal Access Token (or env ADO_PAT)
  --apply       Apply changes (future write actions). Default is dry-run.

Env vars:
  ADO_ORG, ADO_PROJECT, ADO_PAT
  LOG_LEVEL (default: INFO)
"""


## -- errors --------------------------------------------------------


class ButlerError(Exception):
    """Base for errors raised by this script."""


class ConfigurationMissing(ButlerError):
    """Raised when org, project or PAT is still blank after merging args and env vars."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f'missing Azure DevOps settings: {", ".join(missing)}')


class ApiError(ButlerError):
    """Raised when Azure DevOps answers with a non-success status."""

    def __init__(self, status_code: int, body: str, reason: str = '') -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f'ADO API call failed: {status_code} {reason}'.rstrip() + f'\n{body}')


class ParseError(ButlerError):
    """Raised when the response body is not valid JSON, or not shaped like a tags response."""


## -- options -------------------------------------------------------


@dataclass(frozen=True)
class Options:
    show_help: bool = False
    apply: bool = False
    org: str = ''
    project: str = ''
    pat: str = ''


def _is_blank(value: str | None) -> bool:
    return value is None or not value.strip()


def has_flag(argv: Sequence[str], *flags: str) -> bool:
    """Returns whether any token equals one of `flags`, ignoring case."""
    return any(token.lower() in flags for token in argv)


def get_value(argv: Sequence[str], flag: str) -> str:
    """
    Returns the token following the first occurrence of `flag` (ignoring case), whatever it looks like.

    A flag with nothing after it yields ''.
    """
    for i, token in enumerate(argv):
        if token.lower() == flag and i + 1 < len(argv):
            return argv[i + 1]
    return ''


def parse_options(argv: Sequence[str]) -> Options:
    """
    Parses CLI args into `Options`.

    Flags only match whole tokens (so `--apply=yes` or `--org=x` are just ignored, like any unknown token).

    Called by `run()`.
    """
    return Options(
        show_help=has_flag(argv, *HELP_FLAGS),
        apply=has_flag(argv, '--apply'),
        org=get_value(argv, '--org'),
        project=get_value(argv, '--project'),
        pat=get_value(argv, '--pat'),
    )


def resolve_options(options: Options, env_lookup: Callable[[str], str | None] = os.environ.get) -> Options:
    """
    Fills blank org/project/pat from ADO_ORG / ADO_PROJECT / ADO_PAT; non-blank CLI values always win.

    Called by `run()`.
    """

    def pick(cli_value: str, env_name: str) -> str:
        if not _is_blank(cli_value):
            return cli_value
        env_value: str | None = env_lookup(env_name)
        if env_value is not None:
            log.debug(f'using env var ``{env_name}``')
        return env_value or ''

    return replace(
        options,
        org=pick(options.org, ENV_ORG),
        project=pick(options.project, ENV_PROJECT),
        pat=pick(options.pat, ENV_PAT),
    )


def require_settings(options: Options) -> None:
    """
    Raises `ConfigurationMissing` if org, project or PAT is blank.

    Called by `run()`, before any network call.
    """
    missing: list[str] = [
        name for name, value in (('org', options.org), ('project', options.project), ('pat', options.pat)) if _is_blank(value)
    ]
    if missing:
        raise ConfigurationMissing(missing)


## -- http ----------------------------------------------------------


def normalize_org_url(org: str) -> str:
    """Strips trailing slashes from the org URL."""
    return org.rstrip('/')


def build_basic_auth_header(pat: str) -> str:
    """
    Returns the Authorization header value for a PAT.

    Azure DevOps wants Basic auth with a blank username and the PAT as password, ie base64(':<pat>').
    """
    token: str = base64.b64encode(f':{pat}'.encode('utf-8')).decode('ascii')
    return f'Basic {token}'


def create_ado_client(org_url: str, pat: str, transport: httpx.BaseTransport | None = None) -> httpx.Client:
    """
    Builds an httpx client rooted at the org URL (with exactly one trailing slash), carrying auth and accept headers.

    `transport` is only for tests (eg `httpx.MockTransport`).

    Called by `run()`.
    """
    headers: dict[str, str] = {
        'Authorization': build_basic_auth_header(pat),
        'Accept': 'application/json',
    }
    base_url: str = normalize_org_url(org_url) + '/'
    return httpx.Client(base_url=base_url, headers=headers, transport=transport)


def build_tags_path(project: str) -> str:
    """Returns the tags path relative to the org URL; the project is fully percent-encoded (including '/')."""
    return f'{quote(project, safe="")}/_apis/wit/tags?api-version={API_VERSION}'


def extract_tag_names(payload: Any) -> list[str]:
    """
    Pulls tag names out of a tags response, ie `{"count": n, "value": [{"name": "PFTR", ...}, ...]}`.

    A missing/non-list `value` gives an empty list, and items whose `name` is missing, null or blank are skipped.
    Anything else off-shape (a non-object root or item, a non-string `name`) raises `ParseError`.

    Called by `list_project_tags()`.
    """
    if not isinstance(payload, dict):
        raise ParseError(f'unexpected tags response: expected a JSON object, got {type(payload).__name__}')
    names: list[str] = []
    items = payload.get('value')
    if not isinstance(items, list):
        return names
    for item in items:
        if not isinstance(item, dict):
            raise ParseError(f'unexpected tag entry: expected a JSON object, got ``{item!r}``')
        name = item.get('name')
        if name is None:
            continue
        if not isinstance(name, str):
            raise ParseError(f'unexpected tag name: expected a string, got ``{name!r}``')
        if not _is_blank(name):
            names.append(name)
    return names


def list_project_tags(client: httpx.Client, project: str) -> list[str]:
    """
    Fetches all work-item tag names for the project.

    Raises `ApiError` on a non-success status and `ParseError` on malformed JSON or an unexpected shape;
    transport problems propagate as `httpx.TransportError`.

    Called by `run()`.
    """
    path: str = build_tags_path(project)
    log.debug(f'GET ``{path}``')
    resp: httpx.Response = client.get(path)
    body: str = resp.text
    log.debug(f'status: ``{resp.status_code}``')
    if not resp.is_success:
        raise ApiError(resp.status_code, body, resp.reason_phrase)
    try:
        payload: Any = json.loads(body)
    except json.JSONDecodeError as e:
        raise ParseError(f'could not parse tags response as JSON: {e}') from e
    tags: list[str] = extract_tag_names(payload)
    log.debug(f'tags found: {len(tags)}')
    return tags


## -- output --------------------------------------------------------


def sort_tags(tags: list[str]) -> list[str]:
    """Sorts case-insensitively; order among case-insensitive duplicates is whatever the stable sort leaves."""
    return sorted(tags, key=str.casefold)


def print_help() -> None:
    print(HELP_TEXT)


def print_mode(apply: bool) -> None:
    """
    Prints the banner and mode line, plus the dry-run notice.

    Called by `run()`.
    """
    print('Backlog Butler 🧹')
    print(f'Mode: {"Apply" if apply else "Dry-run"}')
    print()
    if not apply:
        print('No changes will be made.')
        print('Use --apply to perform updates (when write actions are added).')
        print()


def print_missing_settings() -> None:
    print('Missing Azure DevOps settings.')
    print('Provide via args: --org --project --pat')
    print(f'Or via env vars: {ENV_ORG}, {ENV_PROJECT}, {ENV_PAT}')
    print()
    print_help()


def print_results(org: str, project: str, tags: list[str]) -> None:
    """
    Prints org, project, count, then one sorted tag per line.

    Called by `run()`.
    """
    print(f'Azure DevOps Org: {org}')
    print(f'Project: {project}')
    print(f'Tags found: {len(tags)}')
    print()
    for tag in sort_tags(tags):
        print(f'- {tag}')


## -- controller ----------------------------------------------------


def run(
    argv: Sequence[str],
    env_lookup: Callable[[str], str | None] = os.environ.get,
    transport: httpx.BaseTransport | None = None,
) -> int:
    """
    Runs the whole flow and returns the process exit code.

    Called by `main()`; tests call it directly with a fixed env and a mock transport.
    """
    ## parse args ---------------------------------------------------
    options: Options = parse_options(argv)
    if options.show_help:
        print_help()
        return EXIT_OK
    options = resolve_options(options, env_lookup)
    print_mode(options.apply)

    ## validate -----------------------------------------------------
    try:
        require_settings(options)
    except ConfigurationMissing as e:
        log.debug(f'{e}')
        print_missing_settings()
        return EXIT_MISSING_SETTINGS

    ## list tags ----------------------------------------------------
    org: str = normalize_org_url(options.org)
    try:
        with create_ado_client(org, options.pat, transport=transport) as client:
            tags: list[str] = list_project_tags(client, options.project)
    except httpx.TransportError as e:
        log.debug('transport error', exc_info=True)
        print('HTTP error while calling Azure DevOps:')
        print(e)
        return EXIT_HTTP_ERROR
    except Exception as e:
        log.debug('unexpected error', exc_info=True)
        print('Unexpected error:')
        print(e)
        return EXIT_UNEXPECTED

    ## output results -----------------------------------------------
    print_results(org, options.project, tags)
    return EXIT_OK


def main() -> int:
    """
    Main controller function.

    Called by dundermain and by the `backlog-butler` console script.
    """
    return run(sys.argv[1:])


if __name__ == '__main__':
    sys.exit(main())
