#!/usr/bin/env python3
"""
Development server runner for Proof Anchor API
Includes auto-reload, logging, and environment checking
"""

import os
import sys
import uvicorn
from pathlib import Path

# Add the parent directory to Python path
sys.path.append(str(Path(__file__).parent.parent))

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

def check_environment():
    """Report which collaborators are configured; nothing is strictly required."""
    optional_vars = [
        "API_HOST",
        "API_PORT",
        "DEBUG",
        "MAX_PAYLOAD_BYTES",
        "ANALYZER_ENDPOINT",
        "REGISTRY_ENDPOINT",
        "REGISTRY_CHAIN_ID",
        "REGISTRY_METADATA_PATH",
        "SIGNING_PROVIDER_URL",
    ]

    print("📋 Configuration:")
    for var in optional_vars:
        print(f"  {var}: {os.getenv(var, 'Not set')}")

    if not os.getenv("REGISTRY_ENDPOINT"):
        print("\n⚠️  REGISTRY_ENDPOINT not set - proofs go to the in-memory registry and are lost on restart")

    metadata_path = os.getenv("REGISTRY_METADATA_PATH")
    if metadata_path and not Path(metadata_path).exists():
        print(f"❌ REGISTRY_METADATA_PATH points at a missing file: {metadata_path}")
        return False

    return True

def check_dependencies():
    """Check if all required dependencies are available."""
    required_modules = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "structlog",
        "requests",
        "multipart",
        "PIL",  # Pillow imports as PIL
    ]

    missing_modules = []
    for module in required_modules:
        try:
            __import__(module)
        except ImportError:
            missing_modules.append(module)

    if missing_modules:
        print(f"❌ Missing required Python modules: {', '.join(missing_modules)}")
        print("Please run: pip install -e .")
        return False

    print("✅ All required dependencies found")
    return True

def main():
    """Main entry point for development server."""
    print("⚓ Proof Anchor - Development Server")
    print("=" * 50)

    if not check_environment():
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    from proof_anchor import config

    try:
        chain_id = config.registry_chain_id()
        print(f"✅ Registry expects chain {chain_id}")
    except (OSError, ValueError, KeyError) as e:
        print(f"❌ Could not read registry metadata: {str(e)}")
        sys.exit(1)

    host = config.API_HOST
    port = config.API_PORT
    debug = os.getenv("DEBUG", "true").lower() == "true"

    print(f"\n🚀 Starting development server...")
    print(f"   Host: {host}")
    print(f"   Port: {port}")
    print(f"   Debug: {debug}")
    print(f"   Docs: http://{host}:{port}/docs")
    print(f"   API: http://{host}:{port}")
    print("\n⏹️  Press Ctrl+C to stop the server")
    print("=" * 50)

    try:
        uvicorn.run(
            "proof_anchor.main:app",
            host=host,
            port=port,
            reload=debug,
            log_level="debug" if debug else "info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\n🛑 Server stopped by user")
    except Exception as e:
        print(f"\n❌ Server error: {str(e)}")
        sys.exit(1)

if __name__ == "__main__":
    main()
