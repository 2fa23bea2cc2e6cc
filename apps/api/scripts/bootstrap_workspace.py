from __future__ import annotations

import argparse
import sys

from identitysync.core.crypto import seal_credentials
from identitysync.db.session import get_sessionmaker
from identitysync.models.enums import ApiKeyScope, DestinationType
from identitysync.models.sync import Destination
from identitysync.models.workspace import Workspace
from identitysync.services.api_keys import create_api_key


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a workspace, an API key and optionally a Klaviyo destination.")
    parser.add_argument("--name", required=True, help="Workspace name")
    parser.add_argument(
        "--scope",
        action="append",
        choices=[s.value for s in ApiKeyScope],
        help="Key scope; repeat for several (default: all)",
    )
    parser.add_argument("--klaviyo-api-key", help="Private Klaviyo key for a destination")
    args = parser.parse_args()

    session = get_sessionmaker()()
    try:
        workspace = Workspace(name=args.name)
        session.add(workspace)
        session.flush()
        workspace_id = workspace.id

        raw_key, _ = create_api_key(
            session=session,
            workspace_id=workspace_id,
            name="bootstrap",
            scopes=[ApiKeyScope(s) for s in args.scope] if args.scope else list(ApiKeyScope),
        )

        destination_id = None
        if args.klaviyo_api_key:
            destination = Destination(workspace_id=workspace_id, type=DestinationType.klaviyo, name="Klaviyo")
            session.add(destination)
            session.flush()
            destination.encrypted_credentials = seal_credentials(
                credentials={"api_key": args.klaviyo_api_key},
                destination_id=str(destination.id),
            )
            destination_id = destination.id

        session.commit()
    finally:
        session.close()

    print(f"workspace_id={workspace_id}")
    print(f"api_key={raw_key}")
    if destination_id is not None:
        print(f"destination_id={destination_id}")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:  # noqa: BLE001
        print(f"bootstrap failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
