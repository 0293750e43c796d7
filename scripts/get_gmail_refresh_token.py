#!/usr/bin/env python3
"""
One-time helper: obtain a Gmail refresh token for the payments inbox.

Runs the OAuth2 consent flow for a Desktop-type OAuth client:

  1. Opens the Google consent page in a browser (read-only Gmail scope,
     offline access so a refresh token is issued).
  2. Receives the authorization code on a local callback server.
  3. Exchanges the code at the token endpoint and prints the GMAIL_* lines
     to add to the backend's .env file.

Prerequisites
-------------
- A Google Cloud project with the Gmail API enabled.
- An OAuth2 client of type "Desktop app" whose redirect URIs include
  http://localhost:3000/oauth2callback (or pass --port).

Usage
-----
python scripts/get_gmail_refresh_token.py --client-id ID --client-secret SECRET

GMAIL_CLIENT_ID / GMAIL_CLIENT_SECRET are used when the flags are omitted.
"""

import argparse
import os
import sys
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
from dotenv import load_dotenv


AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
CALLBACK_PATH = "/oauth2callback"

# Give up if the browser flow has not completed after 5 minutes
CONSENT_TIMEOUT_SECONDS = 5 * 60


class ConsentError(Exception):
    """The consent flow was denied, timed out or the code exchange failed."""


def build_auth_url(client_id: str, redirect_uri: str) -> str:
    """
    Return the consent URL.

    ``access_type=offline`` together with ``prompt=consent`` makes Google
    issue a refresh token even if the account already granted access.
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES),
        "access_type": "offline",
        "prompt": "consent",
    }
    return f"{AUTH_URL}?{urlencode(params)}"


def parse_callback(path: str) -> tuple[Optional[str], Optional[str]]:
    """Return ``(code, error)`` from the callback request path."""
    query = parse_qs(urlparse(path).query)
    code = query.get("code", [None])[0]
    error = query.get("error", [None])[0]
    return code, error


def exchange_code(
    code: str,
    client_id: str,
    client_secret: str,
    redirect_uri: str,
    token_url: str = TOKEN_URL,
) -> dict:
    """
    Exchange an authorization code for tokens.

    Raises:
        ConsentError: on a transport error or an error response.
    """
    try:
        response = httpx.post(
            token_url,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            timeout=30,
        )
    except httpx.HTTPError as e:
        raise ConsentError(f"Token request failed: {e}") from e

    try:
        tokens = response.json()
    except ValueError:
        raise ConsentError(f"Token endpoint returned {response.status_code}: {response.text[:200]}")

    if response.status_code != 200 or "error" in tokens:
        description = tokens.get("error_description") or tokens.get("error") or response.text[:200]
        raise ConsentError(f"Token endpoint returned {response.status_code}: {description}")
    if not tokens.get("refresh_token"):
        raise ConsentError(
            "No refresh token in response. Revoke the app's access in your Google "
            "account settings and run this script again."
        )
    return tokens


def format_env_lines(client_id: str, client_secret: str, refresh_token: str) -> str:
    return "\n".join([
        f"GMAIL_CLIENT_ID={client_id}",
        f"GMAIL_CLIENT_SECRET={client_secret}",
        f"GMAIL_REFRESH_TOKEN={refresh_token}",
    ])


# ---------------------------------------------------------------------------
# Local callback server
# ---------------------------------------------------------------------------

_SUCCESS_PAGE = b"""<html><body style="font-family: sans-serif; padding: 50px; text-align: center;">
<h1>Authorization successful</h1><p>You can close this window and return to the terminal.</p>
</body></html>"""

_FAILURE_PAGE = b"""<html><body style="font-family: sans-serif; padding: 50px; text-align: center;">
<h1>Authorization failed</h1><p>See the terminal for details and try again.</p>
</body></html>"""


class _CallbackHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        if urlparse(self.path).path != CALLBACK_PATH:
            self.send_response(404)
            self.end_headers()
            return

        code, error = parse_callback(self.path)
        self.server.auth_code = code
        self.server.auth_error = error or (None if code else "missing code")

        self.send_response(200)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        self.wfile.write(_SUCCESS_PAGE if code else _FAILURE_PAGE)

    def log_message(self, format, *args):
        # Keep the authorization code out of the terminal
        pass


def wait_for_code(port: int, timeout: float = CONSENT_TIMEOUT_SECONDS) -> str:
    """
    Serve the callback on localhost until the browser redirects back.

    Raises:
        ConsentError: if consent is denied or nothing arrives before ``timeout``.
    """
    server = HTTPServer(("localhost", port), _CallbackHandler)
    server.timeout = timeout
    server.auth_code = None
    server.auth_error = None
    try:
        server.handle_request()
    finally:
        server.server_close()

    if server.auth_code:
        return server.auth_code
    if server.auth_error:
        raise ConsentError(f"Authorization failed: {server.auth_error}")
    raise ConsentError(f"No authorization received after {int(timeout)} seconds")


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> int:
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")
    load_dotenv(project_root / "backend" / ".env")

    parser = argparse.ArgumentParser(
        prog="get_gmail_refresh_token.py",
        description="Run the Gmail OAuth2 consent flow and print a refresh token.",
    )
    parser.add_argument("--client-id", default=os.getenv("GMAIL_CLIENT_ID"))
    parser.add_argument("--client-secret", default=os.getenv("GMAIL_CLIENT_SECRET"))
    parser.add_argument("--port", type=int, default=3000, help="Callback port (default: 3000)")
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the consent URL instead of opening a browser.",
    )
    args = parser.parse_args()

    if not args.client_id or not args.client_secret:
        print(
            "ERROR: OAuth client credentials missing.\n"
            "Pass --client-id/--client-secret or set GMAIL_CLIENT_ID and "
            "GMAIL_CLIENT_SECRET.\n\n"
            "To create them: Google Cloud Console > APIs & Services > enable the "
            "Gmail API > Credentials > Create OAuth client ID (Desktop app).",
            file=sys.stderr,
        )
        return 1

    redirect_uri = f"http://localhost:{args.port}{CALLBACK_PATH}"
    auth_url = build_auth_url(args.client_id, redirect_uri)

    print("Step 1: authorize access to the payments inbox.")
    print("If the browser does not open, visit this URL manually:\n")
    print(auth_url)
    print()
    if not args.no_browser:
        webbrowser.open(auth_url)

    try:
        print(f"Waiting for the callback on {redirect_uri} ...")
        code = wait_for_code(args.port)
        print("Step 2: exchanging the authorization code...")
        tokens = exchange_code(code, args.client_id, args.client_secret, redirect_uri)
    except ConsentError as exc:
        print(f"\nERROR: {exc}", file=sys.stderr)
        return 1

    print("\nAdd these to the backend .env (keep them secret):\n")
    print(format_env_lines(args.client_id, args.client_secret, tokens["refresh_token"]))
    return 0


if __name__ == "__main__":
    sys.exit(main())
