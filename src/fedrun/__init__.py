"""`fedrun` - client-side run controller for federated consortium pipelines.

Subpackages:
- mapping: Consortium variable mapping and collection bookkeeping
- runtime: Engine and container runtime contracts, image acquisition
- staging: Input staging, provenance, output mirroring, asset download
- pipeline: Run orchestrator, session and control surface
"""

__version__ = "0.1.0"
