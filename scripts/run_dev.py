#!/usr/bin/env python3
"""
Development server runner for AI Proof Vault API
Includes auto-reload and environment checking
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

from proof_vault.config import load_settings

PROVIDER_KEYS = {
    "openai": "OPENAI_API_KEY",
    "gpt-4o-mini": "OPENAI_API_KEY",
    "grok": "XAI_API_KEY",
    "grok-2-vision": "XAI_API_KEY",
}


def check_environment(settings) -> bool:
    """Check that the default provider and backends are usable."""
    key_var = PROVIDER_KEYS.get(settings.DEFAULT_PROVIDER.lower())
    if key_var and not os.getenv(key_var):
        print(f"❌ DEFAULT_PROVIDER={settings.DEFAULT_PROVIDER} but {key_var} is not set")
        print("Set the key in your .env file or use DEFAULT_PROVIDER=mock for offline development.")
        return False

    print("✅ Vision provider configuration found")

    print("\n📋 Backends:")
    print(f"  INDEX_BACKEND: {settings.INDEX_BACKEND}")
    if settings.INDEX_BACKEND == "sqlite":
        print(f"  INDEX_DB_PATH: {settings.INDEX_DB_PATH}")
    else:
        # Don't show full database URL for security
        dsn = settings.INDEX_DB_DSN
        print(f"  INDEX_DB_DSN: {dsn[:20]}..." if len(dsn) > 20 else f"  INDEX_DB_DSN: {dsn}")
    print(f"  STORE_BACKEND: {settings.STORE_BACKEND}")
    print(f"  DEFAULT_PROVIDER: {settings.DEFAULT_PROVIDER}")

    return True


def main():
    """Main entry point for development server."""
    print("🧾 AI Proof Vault - Development Server")
    print("=" * 50)

    settings = load_settings(DEBUG=True)
    if not check_environment(settings):
        sys.exit(1)

    print(f"\n🚀 Starting development server...")
    print(f"   Host: {settings.API_HOST}")
    print(f"   Port: {settings.API_PORT}")
    print(f"   Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
    print("\n⏹️  Press Ctrl+C to stop the server")
    print("=" * 50)

    try:
        uvicorn.run(
            "proof_vault.main:app",
            host=settings.API_HOST,
            port=settings.API_PORT,
            reload=True,
            log_level="debug",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n🛑 Server stopped by user")


if __name__ == "__main__":
    main()
