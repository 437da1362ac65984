"""Verify that the setup is correct before running an audit."""
import os
import sys
import psycopg2
from dotenv import load_dotenv
from org_compliance.config import load_settings
from org_compliance.infrastructure.token_resolver import TokenResolver

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


def check_github_token():
    """Resolve the GitHub token the way the CLI does."""
    print("Checking GitHub token...")

    resolved = TokenResolver().resolve()
    if not resolved.is_available:
        print("⚠️  No token found; only --local audits are possible")
        return True

    print(f"✅ Token found ({resolved.source})")
    token = resolved.token
    if token.startswith(("ghp_", "gho_", "ghs_", "github_pat_")):
        print(f"   Token prefix: {token[:10]}...")
    else:
        print("⚠️  Token format may be invalid (expected ghp_*, ghs_* or github_pat_*)")
    return True


def check_organization():
    """Check that an organization to audit is configured."""
    print("\nChecking organization...")

    settings = load_settings()
    if not settings.organization:
        print("⚠️  GITHUB_ORG not set; pass --org on the command line")
        return True
    print(f"✅ Organization: {settings.organization}")
    if settings.tracking_repository:
        print(f"   Tracking repository: {settings.tracking_repository}")
    return True


def check_history_backend():
    """Check the configured snapshot storage."""
    print("\nChecking history backend...")

    settings = load_settings()
    if settings.history_backend == "file":
        directory = settings.history_dir
        if os.path.isdir(directory):
            snapshots = [name for name in os.listdir(directory) if name.startswith("health-")]
            print(f"✅ File history at {directory} ({len(snapshots)} snapshots)")
        else:
            print(f"✅ File history will be created at {directory}")
        return True

    try:
        conn = psycopg2.connect(settings.connection_string())
        cursor = conn.cursor()
        cursor.execute("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = 'health_snapshots'
        """)

        if cursor.fetchone():
            cursor.execute("SELECT COUNT(*) FROM health_snapshots")
            count = cursor.fetchone()[0]
            print(f"✅ Connected to PostgreSQL at {settings.postgres_host}:{settings.postgres_port}")
            print(f"   Stored snapshots: {count}")
            result = True
        else:
            print("❌ Database schema not found. Run 'python setup_postgres.py' first.")
            result = False

        cursor.close()
        conn.close()
        return result

    except Exception as e:
        print(f"❌ Failed to check PostgreSQL history: {e}")
        return False


def main():
    """Run all verification checks."""
    print("=" * 60)
    print("Org Compliance - Setup Verification")
    print("=" * 60)

    checks = [
        ("GitHub Token", check_github_token),
        ("Organization", check_organization),
        ("History Backend", check_history_backend),
    ]

    results = {}
    for name, check_func in checks:
        try:
            results[name] = check_func()
        except Exception as e:
            print(f"❌ {name} check failed with exception: {e}")
            results[name] = False

    print("\n" + "=" * 60)
    print("Verification Summary")
    print("=" * 60)

    for name, passed in results.items():
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"{status}: {name}")

    if all(results.values()):
        print("\n✅ All checks passed! Ready to run an audit.")
        print("\nNext steps:")
        print("  org-compliance --org-health --trending --prioritize")
        sys.exit(0)
    else:
        print("\n❌ Some checks failed. Please fix the issues above.")
        print("\nCommon solutions:")
        print("  - Set GITHUB_TOKEN: export GITHUB_TOKEN=your_token")
        print("  - Use file history: export HISTORY_BACKEND=file")
        print("  - Create schema: python setup_postgres.py")
        sys.exit(1)


if __name__ == "__main__":
    main()
