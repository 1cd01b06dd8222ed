"""
Batch embedding generation for a catalog of product images.

Processes a directory of product images and writes:
    - faiss_embeddings.index — FAISS inner-product index of the embeddings
    - embedding_ids.npy      — candidate id for each index position
    - index_meta.json        — dimension, model version and counts

Embeddings are compressed to 4 decimals before storage. Runs are
incremental: products already present in a compatible index (same model
version and dimension) are kept and not re-embedded unless force is set.
An index built by a different backbone is rebuilt from scratch.

Usage:
    python -m image_search.index_builder --image-dir images/ --output-dir index/
    python -m image_search.index_builder --image-dir images/ --output-dir index/ \\
        --metadata products.json --category shoes --force
"""

import os
import sys
import json
import asyncio
import logging
import argparse
from datetime import datetime, timezone
from typing import Dict, List, Optional

import cv2
import faiss
import numpy as np

from .catalog_index import FAISS_FILENAME, IDS_FILENAME, META_FILENAME, EmbeddingIndex
from .config import EMBEDDING_DIMENSION, SearchConfig
from .embeddings import compress_embedding, is_valid_embedding
from .extractor import embed
from .model_cache import ModelCache, ModelHandle
from .preprocessing import preprocess

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.webp'}


def _list_images(image_dir: str, metadata_path: Optional[str], category: Optional[str] = None):
    """Return (candidate_id, filename) pairs in catalog order."""
    if metadata_path and os.path.exists(metadata_path):
        with open(metadata_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
        entries = []
        for entry in metadata:
            filename = entry.get('filename')
            if not filename:
                continue
            if category is not None and entry.get('category') != category:
                continue
            candidate_id = str(entry.get('id') or os.path.splitext(filename)[0])
            entries.append((candidate_id, filename))
        return entries

    if category is not None:
        raise ValueError("Filtering by category requires a metadata file with categories")

    filenames = sorted(
        f for f in os.listdir(image_dir)
        if os.path.splitext(f)[1].lower() in IMAGE_EXTENSIONS
    )
    return [(os.path.splitext(f)[0], f) for f in filenames]


def _load_existing(output_dir: str, handle: ModelHandle) -> Dict[str, np.ndarray]:
    """Embeddings of a previous run that are still valid for this backbone."""
    if not os.path.exists(os.path.join(output_dir, META_FILENAME)):
        return {}

    existing = EmbeddingIndex(output_dir)
    if existing.needs_reindex(handle.model_version, handle.output_dim):
        logger.info(
            f"Existing index was built by {existing.model_version} ({existing.dim}d); "
            f"rebuilding for {handle.model_version}"
        )
        return {}
    return existing.candidates()


def build_index(image_dir: str,
                output_dir: str,
                handle: ModelHandle,
                metadata_path: Optional[str] = None,
                limit: int = 0,
                dry_run: bool = False,
                category: Optional[str] = None,
                force: bool = False) -> dict:
    """
    Embed product images and save (or update) the index.

    Args:
        image_dir: Directory containing product images.
        output_dir: Directory to write index files. A compatible index
            already there is updated in place.
        handle: Loaded backbone from ModelCache.load().
        metadata_path: Optional JSON list of {"id", "filename", "category"}
            entries. If not provided, scans image_dir and uses file stems
            as ids.
        limit: Process at most this many images (0 = all).
        dry_run: Embed but don't write any files.
        category: Only process metadata entries of this category.
        force: Re-embed products that are already in the index.

    Returns:
        Dict with 'success', 'processed', 'failed', 'skipped',
        'already_indexed', 'total', 'dimensions' and 'model_version'.

    Raises:
        ValueError: If category is given without a metadata file.
    """
    entries = _list_images(image_dir, metadata_path, category)

    vectors_by_id = _load_existing(output_dir, handle)
    if not force:
        already = sum(1 for candidate_id, _ in entries if candidate_id in vectors_by_id)
        entries = [(cid, f) for cid, f in entries if cid not in vectors_by_id]
    else:
        already = 0

    if limit > 0:
        entries = entries[:limit]

    expected_dim = handle.output_dim if handle.output_dim is not None else EMBEDDING_DIMENSION

    processed = 0
    failed = 0
    skipped = 0

    logger.info(
        f"Building embedding index from {len(entries)} images in {image_dir} "
        f"({already} already indexed, category: {category or 'all'}, force: {force})"
    )

    for i, (candidate_id, filename) in enumerate(entries):
        filepath = os.path.join(image_dir, filename)
        if not os.path.exists(filepath):
            logger.warning(f"Skipped (missing file): {filename}")
            skipped += 1
            continue

        image = cv2.imread(filepath)
        if image is None:
            logger.warning(f"Could not read: {filename}")
            failed += 1
            continue

        try:
            image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
            tensor = preprocess(image_rgb, handle.input_size)
            embedding = embed(tensor, handle)
        except Exception as e:
            logger.warning(f"Failed to embed {filename}: {e}")
            failed += 1
            continue

        if not is_valid_embedding(embedding.vector, expected_dim):
            logger.warning(
                f"Invalid embedding for {filename}: {embedding.dim} values, expected {expected_dim}"
            )
            failed += 1
            continue

        vectors_by_id[candidate_id] = compress_embedding(embedding.vector)
        processed += 1

        if (i + 1) % 500 == 0:
            logger.info(f"Processed {i + 1}/{len(entries)} images")

    if not vectors_by_id:
        return {"success": False, "error": "No valid images processed",
                "processed": 0, "failed": failed, "skipped": skipped,
                "already_indexed": already}

    ids: List[str] = list(vectors_by_id)
    matrix = np.vstack([vectors_by_id[candidate_id] for candidate_id in ids]).astype(np.float32)
    dim = matrix.shape[1]

    result = {
        "success": True,
        "processed": processed,
        "failed": failed,
        "skipped": skipped,
        "already_indexed": already,
        "total": len(ids),
        "dimensions": dim,
        "model_version": handle.model_version,
    }

    if dry_run:
        logger.info(f"Dry run: {processed} embeddings of {dim}d computed, nothing saved")
        return result

    faiss_path = os.path.join(output_dir, FAISS_FILENAME)
    result["index_path"] = faiss_path

    if processed == 0 and os.path.exists(faiss_path):
        logger.info(f"Index up to date: {len(ids)} embeddings, nothing to add")
        return result

    os.makedirs(output_dir, exist_ok=True)

    index = faiss.IndexFlatIP(dim)
    index.add(matrix)
    faiss.write_index(index, faiss_path)

    np.save(os.path.join(output_dir, IDS_FILENAME), np.array(ids))

    meta = {
        "dim": dim,
        "modelVersion": handle.model_version,
        "count": len(ids),
        "compressed": True,
        "createdAt": datetime.now(timezone.utc).isoformat(),
    }
    with open(os.path.join(output_dir, META_FILENAME), 'w', encoding='utf-8') as f:
        json.dump(meta, f, indent=2)

    logger.info(
        f"Index built: {processed} new images, {len(ids)} total, {dim}d vectors, "
        f"{failed} failed, {skipped} skipped"
    )
    return result


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate catalog image embeddings")
    parser.add_argument("--image-dir", required=True, help="Directory of product images")
    parser.add_argument("--output-dir", required=True, help="Where to write the index files")
    parser.add_argument("--metadata", default=None, help="Optional JSON list of {id, filename, category}")
    parser.add_argument("--model-source", default=None, help="Backbone to load (default: env / mobilenet_v2)")
    parser.add_argument("--limit", type=int, default=0, help="Number of images to process (0 = all)")
    parser.add_argument("--category", default=None, help="Only process products of this category")
    parser.add_argument("--force", action="store_true", help="Re-embed products that are already indexed")
    parser.add_argument("--dry-run", action="store_true", help="Compute embeddings without saving")
    args = parser.parse_args(argv)

    if args.category and not args.metadata:
        parser.error("--category requires --metadata")

    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = SearchConfig().with_overrides(model_source=args.model_source)
    cache = ModelCache()
    handle = asyncio.run(cache.load(config))
    try:
        result = build_index(args.image_dir, args.output_dir, handle,
                             metadata_path=args.metadata,
                             limit=args.limit,
                             dry_run=args.dry_run,
                             category=args.category,
                             force=args.force)
    finally:
        cache.dispose()

    if not result["success"]:
        logger.error(result.get("error", "Index build failed"))
        return 1
    return 1 if result["failed"] > 0 else 0


if __name__ == "__main__":
    sys.exit(main())
