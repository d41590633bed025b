#!/usr/bin/env python3
"""
Export a network stored in the SQLite model database to a snapshot file.

The API server keeps trained networks in ``models/networks.db``. This script
writes one of them as a standalone JSON snapshot that an inference-only
runtime can load without the database.

Usage:
    python scripts/export_from_db.py NETWORK_ID [OUTPUT] [MODEL_DIR]

The script will:
1. Load the network from the database
2. Write it as a JSON snapshot (default: NETWORK_ID.json)
3. Re-load the file and verify both produce identical outputs
"""

import os
import sys

import numpy as np

from digitnet.model_codec import load_model, save_model
from digitnet.model_persistence import get_network_metadata, load_network


def verify_export(network, path: str) -> bool:
    """
    Check that the exported file reproduces the network's outputs.

    Parameters:
    -----------
    network : Network
        The network loaded from the database
    path : str
        Path of the exported snapshot

    Returns:
    --------
    bool
        True if every output matches
    """
    print("\n🔍 Verifying export...")
    restored = load_model(path)
    probe = np.random.default_rng(0).random((network.input_size, 1))
    if not np.allclose(network.feedforward(probe), restored.feedforward(probe),
                       rtol=0.0, atol=1e-12):
        print("❌ Exported snapshot produces different outputs!")
        return False
    print("✅ Verification passed! Outputs are identical.")
    return True


def main():
    """Main export function."""
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    network_id = sys.argv[1]
    output = sys.argv[2] if len(sys.argv) > 2 else f"{network_id}.json"
    model_dir = sys.argv[3] if len(sys.argv) > 3 else 'models'

    print("=" * 60)
    print("Model Database Export")
    print("=" * 60)

    metadata = get_network_metadata(network_id, model_dir)
    if metadata is None:
        print(f"❌ Error: network '{network_id}' not found in {model_dir}")
        sys.exit(1)

    print(f"📂 Network {network_id}")
    print(f"   - Architecture: {metadata['architecture']}")
    print(f"   - Trained: {metadata['trained']}")
    print(f"   - Accuracy: {metadata['accuracy']}")

    try:
        network = load_network(network_id, model_dir)
        save_model(network, output)
        size_kb = os.path.getsize(output) / 1024
        print(f"\n💾 Wrote {output} ({size_kb:.1f} KB)")

        if not verify_export(network, output):
            sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error during export: {e}")
        sys.exit(1)

    print("\n✅ EXPORT COMPLETE!")


if __name__ == '__main__':
    main()
