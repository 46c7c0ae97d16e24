"""Poll pipeline: per-chain cycles, schedulers and job entrypoints."""
