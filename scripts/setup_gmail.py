"""One-time Gmail OAuth2 token setup.

Run this script locally to complete the OAuth flow and generate token.json.
The token file is then used by the server and the MCP tools when requests
carry no bearer token.

Usage:
    python -m scripts.setup_gmail

Prerequisites:
    1. Create a Google Cloud project and enable the Gmail API
    2. Create OAuth2 Desktop App credentials
    3. Download credentials.json to the project root
"""

import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from greenviva.config import GMAIL_SCOPES, GMAIL_TOKEN_PATH, SENDER_ADDRESS, TIPS_DRAFT_SUBJECT

CREDENTIALS_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "credentials.json")


def main():
    if not os.path.exists(CREDENTIALS_PATH):
        print(f"Error: {CREDENTIALS_PATH} not found.")
        print("Download OAuth2 Desktop App credentials from Google Cloud Console.")
        sys.exit(1)

    creds = None
    if os.path.exists(GMAIL_TOKEN_PATH):
        creds = Credentials.from_authorized_user_file(GMAIL_TOKEN_PATH, GMAIL_SCOPES)
        print(f"Existing token found at {GMAIL_TOKEN_PATH}")
        # Drafts need the compose scope on top of read access
        if creds and creds.scopes and not set(GMAIL_SCOPES).issubset(creds.scopes):
            print("Token missing required scope(s) — deleting to re-auth with all scopes.")
            os.remove(GMAIL_TOKEN_PATH)
            creds = None

    if not creds or not creds.valid:
        if creds and creds.expired and creds.refresh_token:
            print("Token expired, refreshing...")
            creds.refresh(Request())
        else:
            print("Starting OAuth2 flow — a browser window will open.")
            flow = InstalledAppFlow.from_client_secrets_file(CREDENTIALS_PATH, GMAIL_SCOPES)
            creds = flow.run_local_server(port=0)

        with open(GMAIL_TOKEN_PATH, "w") as f:
            f.write(creds.to_json())
        print(f"Token saved to {GMAIL_TOKEN_PATH}")
    else:
        print("Token is still valid.")

    # Verify access
    service = build("gmail", "v1", credentials=creds)
    profile = service.users().getProfile(userId="me").execute()
    print(f"\nAccess verified for {profile.get('emailAddress')}.")

    transfers = service.users().messages().list(
        userId="me", q=f"from:{SENDER_ADDRESS}", maxResults=1
    ).execute()
    found = "found" if transfers.get("messages") else "not found yet"
    print(f"Transfer notifications from {SENDER_ADDRESS}: {found}")

    drafts = service.users().drafts().list(userId="me", q=f'subject:"{TIPS_DRAFT_SUBJECT}"').execute()
    print(f"Tip sync draft: {'present' if drafts.get('drafts') else 'will be created on first sync'}")

    print(f"\nSetup complete. Copy {GMAIL_TOKEN_PATH} to your deployment environment.")
    print("Note: Tokens in testing mode expire every 7 days. Re-run this script to refresh.")


if __name__ == "__main__":
    main()
