"""
Versioned, checksummed documents for HNSWIndex and ClusterRouter.

Graph document (schema 2.0.0):
    metadata   {version, created, updated, checksum}
    config     {M, efConstruction, metric, levelMult?, defaultEfSearch?, seed?}
    graph      {dimension, levelMax, entryPointId, nodeCount}
    nodes      [{id, level, vector, neighborData, deleted?}]

neighborData packs every layer as [count, id, id, ...]; empty slots are not
stored. levelMult is only written when it differs from 1/ln(M); defaultEfSearch
and seed only when they differ from the HNSWConfig defaults; deleted only
when true.

Router document (schema 1.0.0):
    metadata            {version, created, updated, checksum, compression}
    config              RouterConfig fields that differ from the defaults
    graph               {dimension, clusterCount, centroidCount, vectorCount}
    centroids           [{id, vector, memberCount, boundingRadius}]
    centroidIndex       graph document of the routing index
    quantizer           {min, max} (quantized routers only)
    vectors             [{id, vector | codes, clusterId, metadata?}]
    clusterAssignments  {clusterId: [ids]}

Integrity problems found while loading (count or checksum mismatches) are
reported with CorruptedSerializationWarning and loading continues. Documents
missing whole sections raise CorruptedSerializationError.
"""

import gzip
import json
import logging
import math
import warnings
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np

from tieredann.config import HNSWConfig, RouterConfig
from tieredann.errors import (
    ConfigurationInvalidError,
    CorruptedSerializationError,
    CorruptedSerializationWarning,
)
from tieredann.hnsw.graph import EMPTY_SLOT
from tieredann.hnsw.index import HNSWIndex
from tieredann.hnsw.utils import default_level_mult
from tieredann.router.index import Centroid, ClusterRouter, VectorRecord
from tieredann.router.quantizer import VectorQuantizer

logger = logging.getLogger(__name__)

GRAPH_SCHEMA_VERSION = "2.0.0"
ROUTER_SCHEMA_VERSION = "1.0.0"

GRAPH_SECTIONS = ("metadata", "config", "graph", "nodes")
ROUTER_SECTIONS = (
    "metadata",
    "config",
    "graph",
    "centroids",
    "centroidIndex",
    "vectors",
    "clusterAssignments",
)

GZIP_MAGIC = b"\x1f\x8b"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# Checksums

def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def string_hash(text: str) -> str:
    """
    32-bit rolling string hash, rendered in base 36.

    h = h * 31 + code point, wrapped to a signed 32-bit integer after every
    step; the absolute value of the final h is returned.

    Example:
        >>> string_hash("abc")
        '22ci'
    """
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def _scalar(value: Any) -> str:
    return "null" if value is None else str(value)


def graph_checksum(M: int, dimension: Optional[int], node_count: int, entry_point_id: int, level_max: int) -> str:
    return string_hash(
        "-".join(_scalar(v) for v in (M, dimension, node_count, entry_point_id, level_max))
    )


def router_checksum(vector_count: int, cluster_count: int, dimension: Optional[int]) -> str:
    return string_hash(
        f"v{ROUTER_SCHEMA_VERSION}-vec{vector_count}-cls{cluster_count}-dim{_scalar(dimension)}"
    )


def _integrity_warning(message: str) -> None:
    logger.warning(message)
    warnings.warn(message, CorruptedSerializationWarning, stacklevel=3)


def _require_sections(document: Any, sections: Tuple[str, ...], kind: str) -> None:
    if not isinstance(document, Mapping):
        raise CorruptedSerializationError(
            f"{kind} document must be a JSON object, got {type(document).__name__}"
        )
    missing = [name for name in sections if document.get(name) is None]
    if missing:
        raise CorruptedSerializationError(
            f"{kind} document is missing sections: {missing}",
            context={"missing": missing},
        )


# Graph documents

def _pack_neighbors(slot_lists: List[List[int]]) -> List[int]:
    packed: List[int] = []
    for slots in slot_lists:
        occupied = [n for n in slots if n != EMPTY_SLOT]
        packed.append(len(occupied))
        packed.extend(occupied)
    return packed


def _unpack_neighbors(data: List[int], level: int) -> List[List[int]]:
    layers: List[List[int]] = []
    pos = 0
    for _ in range(level + 1):
        if pos >= len(data):
            layers.append([])
            continue
        count = int(data[pos])
        layers.append([int(n) for n in data[pos + 1:pos + 1 + count]])
        pos += 1 + count
    return layers


def serialize_graph(index: HNSWIndex) -> Dict[str, Any]:
    """Convert an HNSWIndex into a graph document (tombstoned nodes included)."""
    graph = index.graph

    config: Dict[str, Any] = {
        "M": graph.M,
        "efConstruction": graph.ef_construction,
        "metric": graph.metric,
    }
    if not math.isclose(graph.level_mult, default_level_mult(graph.M)):
        config["levelMult"] = graph.level_mult
    defaults = HNSWConfig()
    if index.config.default_ef_search != defaults.default_ef_search:
        config["defaultEfSearch"] = index.config.default_ef_search
    if index.config.seed != defaults.seed:
        config["seed"] = index.config.seed

    nodes = []
    for node in graph.nodes.values():
        entry = {
            "id": node.id,
            "level": node.level,
            "vector": node.vector.tolist(),
            "neighborData": _pack_neighbors(node.neighbors),
        }
        if node.deleted:
            entry["deleted"] = True
        nodes.append(entry)

    return {
        "metadata": {
            "version": GRAPH_SCHEMA_VERSION,
            "created": index.created_at,
            "updated": index.updated_at,
            "checksum": graph_checksum(
                graph.M, graph.dimension, graph.size(), graph.entry_point_id, graph.level_max
            ),
        },
        "config": config,
        "graph": {
            "dimension": graph.dimension,
            "levelMax": graph.level_max,
            "entryPointId": graph.entry_point_id,
            "nodeCount": graph.size(),
        },
        "nodes": nodes,
    }


def _is_entries_layout(document: Mapping[str, Any]) -> bool:
    nodes = document.get("nodes")
    return (
        isinstance(nodes, list)
        and len(nodes) > 0
        and isinstance(nodes[0], (list, tuple))
        and len(nodes[0]) == 2
    )


def _legacy_node(node_data: Mapping[str, Any]) -> Dict[str, Any]:
    node = {
        "id": node_data["id"],
        "level": node_data["level"],
        "vector": node_data["vector"],
        "neighborData": _pack_neighbors(node_data.get("neighbors", [])),
    }
    if node_data.get("deleted"):
        node["deleted"] = True
    return node


def _legacy_header(document: Mapping[str, Any], nodes: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "metadata": {"version": GRAPH_SCHEMA_VERSION, "created": None, "updated": None},
        "config": {
            "M": document["M"],
            "efConstruction": document["efConstruction"],
            "metric": document.get("metric", "cosine"),
        },
        "graph": {
            "dimension": document.get("d"),
            "levelMax": document.get("levelMax", -1),
            "entryPointId": document.get("entryPointId", -1),
            "nodeCount": len(nodes),
        },
        "nodes": nodes,
    }


def migrate_entries_layout(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Legacy layout with nodes stored as [id, node] pairs and full slot arrays."""
    nodes = [_legacy_node(node_data) for _, node_data in document["nodes"]]
    return _legacy_header(document, nodes)


def migrate_flat_layout(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Legacy layout with top-level M/d and node dicts carrying full slot arrays."""
    nodes = [_legacy_node(node_data) for node_data in document.get("nodes", [])]
    return _legacy_header(document, nodes)


LEGACY_MIGRATORS: Dict[str, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
    "entries": migrate_entries_layout,
    "flat": migrate_flat_layout,
}


def detect_legacy_layout(document: Mapping[str, Any]) -> Optional[str]:
    """Name of the legacy layout, or None for a current document."""
    metadata = document.get("metadata")
    if isinstance(metadata, Mapping) and metadata.get("version"):
        return None
    if "M" not in document:
        raise CorruptedSerializationError(
            "Document has no schema version and no recognizable legacy layout"
        )
    return "entries" if _is_entries_layout(document) else "flat"


def migrate_legacy_graph(document: Mapping[str, Any]) -> Dict[str, Any]:
    layout = detect_legacy_layout(document)
    if layout is None:
        return dict(document)

    logger.warning("Loading legacy graph document (%s layout), migrating", layout)
    try:
        return LEGACY_MIGRATORS[layout](document)
    except (KeyError, TypeError, ValueError) as e:
        raise CorruptedSerializationError(
            f"Legacy graph document ({layout} layout) is malformed: {e}"
        ) from e


def deserialize_graph(document: Mapping[str, Any]) -> HNSWIndex:
    """
    Rebuild an HNSWIndex from a graph document.

    Legacy documents are migrated first. The stored neighbor lists are restored
    as-is; nothing is re-linked.

    Raises:
        CorruptedSerializationError: If sections or node fields are missing or
            the node data is inconsistent with the declared parameters
    """
    if not isinstance(document, Mapping):
        raise CorruptedSerializationError("Graph document must be a JSON object")

    document = migrate_legacy_graph(document)
    _require_sections(document, GRAPH_SECTIONS, "Graph")

    metadata = document["metadata"]
    config = document["config"]
    header = document["graph"]
    node_docs = document["nodes"]

    try:
        index = HNSWIndex(
            M=int(config["M"]),
            ef_construction=int(config["efConstruction"]),
            metric=config.get("metric", "cosine"),
            level_mult=config.get("levelMult"),
            seed=config.get("seed"),
            config=HNSWConfig(
                default_ef_search=int(
                    config.get("defaultEfSearch", HNSWConfig.default_ef_search)
                )
            ),
        )
        graph = index.graph
        dimension = header.get("dimension")
        if dimension is not None:
            graph.dimension = int(dimension)

        for node_doc in node_docs:
            node_id = int(node_doc["id"])
            level = int(node_doc["level"])
            vector = np.array(node_doc["vector"], dtype=np.float32)
            if graph.dimension is not None and vector.shape != (graph.dimension,):
                raise CorruptedSerializationError(
                    f"Node {node_id} has dimension {vector.shape}, expected {graph.dimension}",
                    context={"id": node_id},
                )

            node = graph.add_node(node_id, vector, level)
            for layer, neighbor_ids in enumerate(
                _unpack_neighbors(node_doc.get("neighborData", []), level)
            ):
                node.set_neighbors(layer, neighbor_ids)
            node.deleted = bool(node_doc.get("deleted", False))

        graph.set_entry_point(int(header["entryPointId"]), int(header["levelMax"]))
        declared_count = int(header["nodeCount"])
        checksum_inputs = (
            int(config["M"]), header.get("dimension"), declared_count,
            int(header["entryPointId"]), int(header["levelMax"]),
        )
    except CorruptedSerializationError:
        raise
    except ConfigurationInvalidError as e:
        raise CorruptedSerializationError(f"Graph document has invalid config: {e}") from e
    except (KeyError, TypeError, ValueError) as e:
        raise CorruptedSerializationError(f"Graph document is malformed: {e}") from e

    if declared_count != len(node_docs):
        _integrity_warning(
            f"Node count mismatch: expected {declared_count}, got {len(node_docs)}"
        )

    checksum = metadata.get("checksum")
    if checksum and checksum != graph_checksum(*checksum_inputs):
        _integrity_warning("Graph checksum mismatch - data may be corrupted")

    if graph.active_count() and not graph.is_live(graph.entry_point_id):
        _integrity_warning(
            f"Entry point {graph.entry_point_id} is not a live node; re-electing"
        )
        graph.refresh_entry_point()

    if metadata.get("created"):
        index.created_at = metadata["created"]
    if metadata.get("updated"):
        index.updated_at = metadata["updated"]

    return index


# Router documents

def _centroid_doc(centroid: Centroid) -> Dict[str, Any]:
    return {
        "id": centroid.id,
        "vector": centroid.vector.tolist(),
        "memberCount": centroid.member_count,
        "boundingRadius": centroid.bounding_radius,
    }


def _router_header(router: ClusterRouter) -> Dict[str, Any]:
    return {
        "dimension": router.dimension,
        "clusterCount": len(router.members),
        "centroidCount": len(router.centroids),
        "vectorCount": len(router.records),
    }


def serialize_router(router: ClusterRouter) -> Dict[str, Any]:
    """Convert a built ClusterRouter into a router document."""
    vectors = []
    for record in router.records.values():
        entry: Dict[str, Any] = {"id": record.id}
        if record.codes is not None:
            entry["codes"] = record.codes.tolist()
        else:
            entry["vector"] = record.vector.tolist()
        entry["clusterId"] = record.cluster_id
        if record.metadata is not None:
            entry["metadata"] = record.metadata
        vectors.append(entry)

    document: Dict[str, Any] = {
        "metadata": {
            "version": ROUTER_SCHEMA_VERSION,
            "created": router.created_at,
            "updated": router.updated_at,
            "checksum": router_checksum(len(vectors), len(router.members), router.dimension),
            "compression": "uint8" if router.quantizer is not None else "none",
        },
        "config": router.config.non_default_items(),
        "graph": _router_header(router),
        "centroids": [_centroid_doc(c) for c in router.centroids.values()],
        "centroidIndex": serialize_graph(router.routing_index),
        "vectors": vectors,
        "clusterAssignments": {
            str(cluster_id): sorted(member_ids)
            for cluster_id, member_ids in router.members.items()
        },
    }
    if router.quantizer is not None:
        document["quantizer"] = router.quantizer.to_dict()

    return document


def deserialize_router(document: Mapping[str, Any]) -> ClusterRouter:
    """
    Rebuild a ClusterRouter from a router document.

    Raises:
        CorruptedSerializationError: If sections are missing or records are
            unusable (e.g. codes without quantizer bounds)
    """
    _require_sections(document, ROUTER_SECTIONS, "Router")

    metadata = document["metadata"]
    header = document["graph"]

    if metadata.get("version") != ROUTER_SCHEMA_VERSION:
        _integrity_warning(
            f"Router schema version mismatch: expected {ROUTER_SCHEMA_VERSION}, "
            f"got {metadata.get('version')}"
        )

    try:
        config = RouterConfig.from_dict(document["config"])
        dimension = int(header["dimension"])

        quantizer = None
        if document.get("quantizer") is not None:
            quantizer = VectorQuantizer.from_dict(document["quantizer"])

        centroids = {}
        for doc in document["centroids"]:
            cluster_id = int(doc["id"])
            centroids[cluster_id] = Centroid(
                cluster_id,
                np.array(doc["vector"], dtype=np.float32),
                int(doc.get("memberCount", 0)),
                float(doc.get("boundingRadius", 0.0)),
            )

        records = {}
        for doc in document["vectors"]:
            item_id = doc["id"]
            cluster_id = int(doc["clusterId"])
            metadata_value = doc.get("metadata")
            if "codes" in doc:
                if quantizer is None:
                    raise CorruptedSerializationError(
                        f"Record {item_id!r} is quantized but the document has no quantizer",
                        context={"id": item_id},
                    )
                codes = np.array(doc["codes"], dtype=np.uint8)
                records[item_id] = VectorRecord(item_id, None, cluster_id, metadata_value, codes)
            else:
                vector = np.array(doc["vector"], dtype=np.float32)
                records[item_id] = VectorRecord(item_id, vector, cluster_id, metadata_value)

        members = {
            int(cluster_id): set(member_ids)
            for cluster_id, member_ids in document["clusterAssignments"].items()
        }
    except CorruptedSerializationError:
        raise
    except ConfigurationInvalidError as e:
        raise CorruptedSerializationError(f"Router document has invalid config: {e}") from e
    except (KeyError, TypeError, ValueError) as e:
        raise CorruptedSerializationError(f"Router document is malformed: {e}") from e

    routing = deserialize_graph(document["centroidIndex"])

    router = ClusterRouter._restore(
        config,
        dimension,
        records,
        centroids,
        members,
        routing,
        quantizer,
        created_at=metadata.get("created"),
        updated_at=metadata.get("updated"),
    )

    declared_vectors = header.get("vectorCount")
    if declared_vectors != len(records):
        _integrity_warning(
            f"Vector count mismatch: expected {declared_vectors}, got {len(records)}"
        )

    declared_centroids = header.get("centroidCount")
    if declared_centroids != len(centroids):
        _integrity_warning(
            f"Centroid count mismatch: expected {declared_centroids}, got {len(centroids)}"
        )

    checksum = metadata.get("checksum")
    expected = router_checksum(declared_vectors, header.get("clusterCount"), dimension)
    if checksum and checksum != expected:
        _integrity_warning("Router checksum mismatch - data may be corrupted")

    if not router.check_partition():
        _integrity_warning("Cluster assignments do not partition the stored vectors")

    logger.info(
        "Restored cluster index with %d vectors and %d clusters", len(records), len(centroids)
    )
    return router


def validate_router_document(document: Any) -> Tuple[bool, List[str]]:
    """
    Check a router document without loading it.

    Returns:
        (valid, errors) where errors lists every problem found
    """
    if not isinstance(document, Mapping):
        return False, ["Document must be a JSON object"]

    errors = [f"Missing {name}" for name in ROUTER_SECTIONS if document.get(name) is None]
    if errors:
        return False, errors

    header = document["graph"]
    vectors = document["vectors"]
    centroids = document["centroids"]

    if len(vectors) != header.get("vectorCount"):
        errors.append(f"Vector count mismatch: {len(vectors)} vs {header.get('vectorCount')}")
    if len(centroids) != header.get("centroidCount"):
        errors.append(
            f"Centroid count mismatch: {len(centroids)} vs {header.get('centroidCount')}"
        )

    dimension = header.get("dimension")
    for centroid in centroids:
        if len(centroid.get("vector", [])) != dimension:
            errors.append(f"Centroid {centroid.get('id')} has wrong dimension")
    for record in vectors:
        values = record.get("vector", record.get("codes", []))
        if len(values) != dimension:
            errors.append(f"Vector {record.get('id')} has wrong dimension")
        if "codes" in record and document.get("quantizer") is None:
            errors.append(f"Vector {record.get('id')} is quantized but no quantizer is stored")

    known_ids = {record.get("id") for record in vectors}
    assigned: List[Any] = []
    for cluster_id, member_ids in document["clusterAssignments"].items():
        for member_id in member_ids:
            if member_id not in known_ids:
                errors.append(f"Cluster {cluster_id} references unknown vector {member_id}")
        assigned.extend(member_ids)
    if len(assigned) != len(set(assigned)):
        errors.append("A vector is assigned to more than one cluster")
    elif set(assigned) != known_ids:
        errors.append("Some vectors are not assigned to any cluster")

    return len(errors) == 0, errors


def export_structure(router: ClusterRouter) -> Dict[str, Any]:
    """Router document without vectors and assignments (for sharing the layout)."""
    document = serialize_router(router)
    del document["vectors"]
    del document["clusterAssignments"]
    document["metadata"]["checksum"] = ""
    return document


# Flat forms

def stringify(document: Mapping[str, Any], indent: Optional[int] = None) -> str:
    if indent is None:
        return json.dumps(document, separators=(",", ":"))
    return json.dumps(document, indent=indent)


def parse(text: str) -> Dict[str, Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise CorruptedSerializationError(f"Invalid JSON document: {e}") from e


def to_bytes(document: Mapping[str, Any], compress: bool = False) -> bytes:
    """UTF-8 JSON, gzip-compressed when asked."""
    data = stringify(document).encode("utf-8")
    return gzip.compress(data) if compress else data


def from_bytes(data: bytes) -> Dict[str, Any]:
    """Decode to_bytes() output; gzip is detected by its magic bytes."""
    if data[:2] == GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except OSError as e:
            raise CorruptedSerializationError(f"Invalid gzip payload: {e}") from e
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptedSerializationError(f"Document is not UTF-8: {e}") from e
    return parse(text)


def estimate_size(obj: Any) -> Dict[str, Any]:
    """
    Serialized sizes in bytes of an index, a router or a document.

    Returns:
        {"json", "json_pretty", "gzip", "breakdown": {section: bytes}}
    """
    document = obj if isinstance(obj, Mapping) else obj.to_json()
    compact = stringify(document).encode("utf-8")

    return {
        "json": len(compact),
        "json_pretty": len(stringify(document, indent=2).encode("utf-8")),
        "gzip": len(gzip.compress(compact)),
        "breakdown": {
            name: len(stringify(section).encode("utf-8"))
            for name, section in document.items()
        },
    }
