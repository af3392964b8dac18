"""Graph persistence for DocGraph: store access, gateway, enrichment and embeddings."""
