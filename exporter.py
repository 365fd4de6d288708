#!/usr/bin/env python3
"""Export cached posts as one JSON file per blog directory."""

import os
from typing import Any, Dict

from config import config, get_logger
from errors import StoreError
from lockfile import DataDirLock
from posts import PostStore
from telemetry import trace_span
from utils import write_json_atomic

logger = get_logger("exporter")


@trace_span("export.posts", tracer_name="exporter")
async def export_posts(post_store: PostStore, output_dir: str = None) -> int:
    """Write ``tumblr-posts-exported.json`` with every cached post's full record.

    Posts present in the cache but missing from the document store are
    skipped. Returns the number of exported posts.
    """
    output_dir = output_dir or post_store.output_dir
    export_path = os.path.join(output_dir, config.EXPORTED_POSTS_FILE)

    post_ids = post_store.cache.ids()
    exported: Dict[str, Any] = {}
    for post_id in post_ids:
        post = await post_store.find_one(post_id)
        if post is None:
            logger.debug(f"Post {post_id} is cached but has no stored record")
            continue
        exported[post_id] = post.to_dict()

    with DataDirLock(output_dir):
        try:
            write_json_atomic(export_path, exported)
        except OSError as e:
            raise StoreError(f"Could not write {export_path}: {e}") from e

    logger.info(f"Exported {len(exported)}/{len(post_ids)} posts to {export_path}")
    return len(exported)
