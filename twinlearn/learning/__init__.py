"""Learning-to-rank package.

Module split:
    - `ranking_model`: per-user feed-forward scorer with Adam training.
    - `model_store`: durable model snapshots and the feedback training log.
    - `registry`: per-user model lifecycle (lazy load, persist, idle eviction).
    - `locks`: per-key mutex and read/write lock primitives.
"""
