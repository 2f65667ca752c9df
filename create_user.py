from app import create_app
from extensions import music_store
from storage.base import StorageError


def create_user(account, password, role, reset=False, claim_logs=False, app=None):
    app = app or create_app()
    with app.app_context():
        library = music_store.library
        existing = library.get_user_by_account(account)
        if existing and not reset:
            print(f"⚠️  User '{existing.account}' already exists with role '{existing.role}'.")
            return existing

        try:
            user = library.upsert_user(account, password, role)
        except (StorageError, ValueError) as exc:
            print(f"❌ {exc}")
            return None
        action = "Updated" if existing else "Created"
        print(f"✅ {action} user: {user.account} (id: {user.id}, role: {user.role})")

        if claim_logs:
            result = music_store.telemetry.claim_anonymous_playback_logs(user.id)
            print(f"✅ Assigned {result['migrated_count']} anonymous playback logs "
                  f"({result['remaining_null_count']} left unassigned)")

        music_store.stores.flush()
        return user


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description='Create a new user.')
    parser.add_argument('account', help='Account name')
    parser.add_argument('password', help='Password')
    parser.add_argument('role', choices=['admin', 'user'], help='User role')
    parser.add_argument('--reset', action='store_true', help='Reset password/role if the account exists')
    parser.add_argument('--claim-logs', action='store_true', help='Assign anonymous playback logs to this user')

    args = parser.parse_args()
    create_user(args.account, args.password, args.role, reset=args.reset, claim_logs=args.claim_logs)
