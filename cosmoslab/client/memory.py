"""
In-memory Cosmos DB client.

Implements the `DatabaseClient` contract against process-local storage so
the driver, the REST façade and the tests can run without an emulator.
Supports fault injection to simulate startup races and service defects.
"""

import copy
import hashlib
import json
import logging
import re
import threading
import time
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from .base import (
    BatchError,
    ContainerRef,
    DatabaseClient,
    ServiceError,
    validate_item,
)

logger = logging.getLogger(__name__)

_QUERY = re.compile(
    r"^\s*SELECT\s+(?:TOP\s+(?P<top>\d+)\s+)?(?P<select>.+?)\s+FROM\s+(?P<alias>\w+)"
    r"(?:\s+WHERE\s+(?P<where>.+?))?"
    r"(?:\s+ORDER\s+BY\s+(?P<order>.+?))?\s*$",
    re.IGNORECASE | re.DOTALL,
)

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<string>'[^']*'|"[^"]*")
      | (?P<op>!=|<>|>=|<=|=|>|<)
      | (?P<paren>[()])
      | (?P<comma>,)
      | (?P<word>[^\s=!<>(),'"]+)
    )""",
    re.VERBOSE,
)

_AS = re.compile(r"\s+AS\s+", re.IGNORECASE)

_MISSING = object()


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise ServiceError(f"Syntax error near '{text[pos:]}'", status_code=400)
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _WhereClause:
    """Recursive-descent evaluator for the WHERE subset the workload uses.

    Grammar: ``expr := and (OR and)*``, ``and := term (AND term)*``,
    ``term := NOT term | '(' expr ')' | operand op operand
    | operand BETWEEN operand AND operand | operand IN '(' operand (',' operand)* ')'``.
    """

    def __init__(self, text: str, alias: str, parameters: Dict[str, Any]):
        self.tokens = _tokenize(text)
        self.alias = alias
        self.parameters = parameters

    def matches(self, document: Dict[str, Any]) -> bool:
        self._pos = 0
        self._doc = document
        result = self._expr()
        if self._pos != len(self.tokens):
            raise ServiceError(f"Unexpected token '{self.tokens[self._pos][1]}'", status_code=400)
        return result

    def _peek_word(self) -> Optional[str]:
        if self._pos < len(self.tokens) and self.tokens[self._pos][0] == "word":
            return self.tokens[self._pos][1].upper()
        return None

    def _next(self) -> Tuple[str, str]:
        if self._pos >= len(self.tokens):
            raise ServiceError("Unexpected end of query", status_code=400)
        token = self.tokens[self._pos]
        self._pos += 1
        return token

    def _expr(self) -> bool:
        result = self._and()
        while self._peek_word() == "OR":
            self._pos += 1
            rhs = self._and()
            result = result or rhs
        return result

    def _and(self) -> bool:
        result = self._term()
        while self._peek_word() == "AND":
            self._pos += 1
            rhs = self._term()
            result = result and rhs
        return result

    def _term(self) -> bool:
        if self._peek_word() == "NOT":
            self._pos += 1
            return not self._term()
        if self._pos < len(self.tokens) and self.tokens[self._pos] == ("paren", "("):
            self._pos += 1
            result = self._expr()
            if self._next() != ("paren", ")"):
                raise ServiceError("Missing ')'", status_code=400)
            return result

        left = self._operand()

        if self._peek_word() == "BETWEEN":
            self._pos += 1
            lower = self._operand()
            if self._peek_word() != "AND":
                raise ServiceError("Expected AND in BETWEEN", status_code=400)
            self._pos += 1
            upper = self._operand()
            return self._compare(left, ">=", lower) and self._compare(left, "<=", upper)

        if self._peek_word() == "IN":
            self._pos += 1
            if self._next() != ("paren", "("):
                raise ServiceError("Expected '(' after IN", status_code=400)
            values = [self._operand()]
            while self._pos < len(self.tokens) and self.tokens[self._pos][0] == "comma":
                self._pos += 1
                values.append(self._operand())
            if self._next() != ("paren", ")"):
                raise ServiceError("Missing ')'", status_code=400)
            return any(self._compare(left, "=", value) for value in values)

        kind, op = self._next()
        if kind != "op":
            raise ServiceError(f"Expected comparison operator, got '{op}'", status_code=400)
        right = self._operand()
        return self._compare(left, op, right)

    def _operand(self) -> Any:
        kind, value = self._next()
        if kind == "string":
            return value[1:-1]
        if kind != "word":
            raise ServiceError(f"Unexpected token '{value}'", status_code=400)
        if value.startswith("@"):
            if value not in self.parameters:
                raise ServiceError(f"Parameter '{value}' is not defined", status_code=400)
            return self.parameters[value]
        lowered = value.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
        if lowered == "null":
            return None
        if value.startswith(self.alias + "."):
            return _get_nested_value(self._doc, value[len(self.alias) + 1:])
        try:
            return float(value) if "." in value else int(value)
        except ValueError:
            raise ServiceError(f"Unknown identifier '{value}'", status_code=400)

    @staticmethod
    def _compare(left: Any, op: str, right: Any) -> bool:
        if left is _MISSING or right is _MISSING:
            return False
        if op == "=":
            return left == right
        if op in ("!=", "<>"):
            return left != right
        try:
            if op == ">":
                return left > right
            if op == "<":
                return left < right
            if op == ">=":
                return left >= right
            return left <= right
        except TypeError:
            return False


def _get_nested_value(document: Dict[str, Any], field_path: str) -> Any:
    """Get a value by dotted path; ``_MISSING`` when any segment is absent."""
    value: Any = document
    for part in field_path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _partition_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


class InMemoryDatabaseClient(DatabaseClient):
    """
    Thread-safe in-memory `DatabaseClient`.

    Storage layout: ``{database: {container: {partition: {item_id: item}}}}``.

    Attributes:
        calls: Number of calls per operation name
    """

    def __init__(self, account_id: str = "localhost"):
        self.account_id = account_id
        self.calls: Dict[str, int] = defaultdict(int)
        self._databases: Dict[str, Dict[str, Any]] = {}
        self._containers: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._documents: Dict[str, Dict[str, Dict[str, Dict[str, Dict[str, Any]]]]] = {}
        self._failures: Dict[str, List[BaseException]] = defaultdict(list)
        self._unavailable = False
        self._lock = threading.RLock()

    # ========== Fault injection ==========

    def inject_failures(self, operation: str, errors: Sequence[BaseException]) -> None:
        """
        Queue errors to raise on the next calls to ``operation``.

        Args:
            operation: Method name, e.g. ``read_account_metadata``
            errors: Raised in order, one per call
        """
        with self._lock:
            self._failures[operation].extend(errors)

    def set_unavailable(self, unavailable: bool = True) -> None:
        """Make every operation fail as if the endpoint refused connections."""
        self._unavailable = unavailable

    def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self._unavailable:
            raise ServiceError(
                "Connection refused",
                transport_code="ECONNREFUSED",
                operation=operation,
            )
        queued = self._failures.get(operation)
        if queued:
            raise queued.pop(0)

    # ========== Helpers ==========

    @staticmethod
    def _resource_id(resource_type: str, identifier: str) -> str:
        hash_input = f"{resource_type}:{identifier}:{time.time()}"
        return hashlib.sha256(hash_input.encode()).hexdigest()[:8]

    @staticmethod
    def _timestamp() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    @staticmethod
    def _error(message: str, status_code: int, operation: str) -> ServiceError:
        return ServiceError(
            message,
            status_code=status_code,
            activity_id=str(uuid.uuid4()),
            operation=operation,
        )

    def _require_database(self, name: str, operation: str) -> None:
        if name not in self._databases:
            raise self._error(f"Database with id '{name}' not found", 404, operation)

    def _require_container(self, database_name: str, container_name: str, operation: str) -> Dict[str, Any]:
        self._require_database(database_name, operation)
        container = self._containers[database_name].get(container_name)
        if container is None:
            raise self._error(
                f"Container with id '{container_name}' not found in database '{database_name}'",
                404,
                operation,
            )
        return container

    def _partition(self, container: ContainerRef, key: str) -> Dict[str, Dict[str, Any]]:
        return self._documents[container.database_name][container.container_name].setdefault(key, {})

    def _stamp(self, container: Dict[str, Any], item: Dict[str, Any]) -> Dict[str, Any]:
        rid = self._resource_id("doc", item["id"])
        return {
            **copy.deepcopy(item),
            "_rid": rid,
            "_ts": self._timestamp(),
            "_self": f"{container['_self']}docs/{rid}/",
            "_etag": f'"{uuid.uuid4().hex[:16]}"',
            "_attachments": "attachments/",
        }

    # ========== DatabaseClient ==========

    def read_account_metadata(self) -> Dict[str, Any]:
        with self._lock:
            self._enter("read_account_metadata")
            return {
                "id": self.account_id,
                "writable_locations": [{"name": "local", "databaseAccountEndpoint": "memory://"}],
                "readable_locations": [{"name": "local", "databaseAccountEndpoint": "memory://"}],
                "consistency_policy": {"defaultConsistencyLevel": "Session"},
            }

    def read_database(self, name: str) -> Dict[str, Any]:
        with self._lock:
            self._enter("read_database")
            self._require_database(name, "read_database")
            return copy.deepcopy(self._databases[name])

    def create_database(self, name: str) -> Dict[str, Any]:
        with self._lock:
            self._enter("create_database")
            if name in self._databases:
                raise self._error(f"Database with id '{name}' already exists", 409, "create_database")
            rid = self._resource_id("db", name)
            self._databases[name] = {
                "id": name,
                "_rid": rid,
                "_ts": self._timestamp(),
                "_self": f"dbs/{rid}/",
                "_etag": f'"{rid}"',
            }
            self._containers[name] = {}
            self._documents[name] = {}
            logger.debug(f"Created database '{name}'")
            return copy.deepcopy(self._databases[name])

    def delete_database(self, name: str) -> None:
        with self._lock:
            self._enter("delete_database")
            self._require_database(name, "delete_database")
            del self._databases[name]
            del self._containers[name]
            del self._documents[name]

    def read_container(self, database_name: str, container_name: str) -> ContainerRef:
        with self._lock:
            self._enter("read_container")
            container = self._require_container(database_name, container_name, "read_container")
            return ContainerRef(database_name, container_name, container["partitionKey"]["paths"][0])

    def create_container(
        self,
        database_name: str,
        container_name: str,
        partition_key_path: str
    ) -> ContainerRef:
        with self._lock:
            self._enter("create_container")
            self._require_database(database_name, "create_container")
            if container_name in self._containers[database_name]:
                raise self._error(
                    f"Container with id '{container_name}' already exists in database '{database_name}'",
                    409,
                    "create_container",
                )
            if not partition_key_path.startswith("/"):
                raise self._error(
                    f"Partition key path must start with '/': {partition_key_path}",
                    400,
                    "create_container",
                )
            rid = self._resource_id("coll", container_name)
            self._containers[database_name][container_name] = {
                "id": container_name,
                "partitionKey": {"paths": [partition_key_path], "kind": "Hash"},
                "_rid": rid,
                "_ts": self._timestamp(),
                "_self": f"{self._databases[database_name]['_self']}colls/{rid}/",
            }
            self._documents[database_name][container_name] = {}
            logger.debug(f"Created container '{database_name}/{container_name}' on {partition_key_path}")
            return ContainerRef(database_name, container_name, partition_key_path)

    def create_item(
        self,
        container: ContainerRef,
        item: Dict[str, Any],
        partition_key_value: Any
    ) -> Dict[str, Any]:
        with self._lock:
            self._enter("create_item")
            properties = self._require_container(container.database_name, container.container_name, "create_item")
            self._validate(container, item, partition_key_value, "create_item")
            partition = self._partition(container, _partition_key(partition_key_value))
            if item["id"] in partition:
                raise self._error(f"Entity with the specified id '{item['id']}' already exists", 409, "create_item")
            stored = self._stamp(properties, item)
            partition[item["id"]] = stored
            return copy.deepcopy(stored)

    def read_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> Dict[str, Any]:
        with self._lock:
            self._enter("read_item")
            self._require_container(container.database_name, container.container_name, "read_item")
            partition = self._partition(container, _partition_key(partition_key_value))
            if item_id not in partition:
                raise self._error(f"Entity with the specified id '{item_id}' does not exist", 404, "read_item")
            return copy.deepcopy(partition[item_id])

    def delete_item(self, container: ContainerRef, item_id: str, partition_key_value: Any) -> None:
        with self._lock:
            self._enter("delete_item")
            self._require_container(container.database_name, container.container_name, "delete_item")
            partition = self._partition(container, _partition_key(partition_key_value))
            if item_id not in partition:
                raise self._error(f"Entity with the specified id '{item_id}' does not exist", 404, "delete_item")
            del partition[item_id]

    def query_items(
        self,
        container: ContainerRef,
        query: str,
        parameters: Optional[List[Dict[str, Any]]] = None,
        partition_key_value: Optional[Any] = None,
    ) -> Iterator[Dict[str, Any]]:
        with self._lock:
            self._enter("query_items")
            self._require_container(container.database_name, container.container_name, "query_items")
            partitions = self._documents[container.database_name][container.container_name]
            if partition_key_value is None:
                documents = [doc for partition in partitions.values() for doc in partition.values()]
            else:
                documents = list(partitions.get(_partition_key(partition_key_value), {}).values())
            results = self._execute(query, parameters or [], documents)
        return iter(results)

    def create_items_batch(
        self,
        container: ContainerRef,
        items: List[Dict[str, Any]],
        partition_key_value: Any
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self._enter("create_items_batch")
            properties = self._require_container(
                container.database_name, container.container_name, "create_items_batch"
            )
            partition = self._partition(container, _partition_key(partition_key_value))

            # Validate everything before writing anything
            seen = set()
            for index, item in enumerate(items):
                try:
                    validate_item(item, container.partition_key_path, partition_key_value)
                except ValueError as e:
                    raise BatchError(str(e), failed_index=index, status_code=400,
                                     operation="create_items_batch")
                if item["id"] in partition or item["id"] in seen:
                    raise BatchError(
                        f"Entity with the specified id '{item['id']}' already exists",
                        failed_index=index,
                        status_code=409,
                        operation="create_items_batch",
                    )
                seen.add(item["id"])

            created = []
            for item in items:
                stored = self._stamp(properties, item)
                partition[item["id"]] = stored
                created.append(copy.deepcopy(stored))
            return created

    def _validate(self, container: ContainerRef, item: Dict[str, Any], partition_key_value: Any, operation: str) -> None:
        try:
            validate_item(item, container.partition_key_path, partition_key_value)
        except ValueError as e:
            raise self._error(str(e), 400, operation)

    # ========== Query execution ==========

    def _execute(
        self,
        query: str,
        parameters: List[Dict[str, Any]],
        documents: List[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        match = _QUERY.match(query)
        if not match:
            raise self._error(f"Unsupported query: {query}", 400, "query_items")

        alias = match.group("alias")
        params = {p["name"]: p["value"] for p in parameters}

        results = documents
        if match.group("where"):
            clause = _WhereClause(match.group("where"), alias, params)
            results = [doc for doc in results if clause.matches(doc)]

        if match.group("order"):
            field, _, direction = match.group("order").strip().partition(" ")
            field_path = field.strip()[len(alias) + 1:]
            results = sorted(
                results,
                key=self._sort_key(lambda doc: _get_nested_value(doc, field_path)),
                reverse=direction.strip().upper() == "DESC",
            )

        if match.group("top"):
            results = results[:int(match.group("top"))]

        select = match.group("select").strip()
        if select == "*":
            return [copy.deepcopy(doc) for doc in results]

        projected = []
        for doc in results:
            row = {}
            for field in (f.strip() for f in select.split(",")):
                # Handle "c.field AS name"
                parts = _AS.split(field, maxsplit=1)
                source = parts[0]
                name = parts[1].strip() if len(parts) > 1 else ""
                field_path = source[len(alias) + 1:] if source.startswith(alias + ".") else source
                value = _get_nested_value(doc, field_path)
                if value is not _MISSING:
                    row[name or field_path.split(".")[-1]] = copy.deepcopy(value)
            projected.append(row)
        return projected

    @staticmethod
    def _sort_key(getter: Callable[[Dict[str, Any]], Any]) -> Callable[[Dict[str, Any]], Tuple[int, str, Any]]:
        # Undefined values sort first; ints and floats share a bucket, other types group by name
        def key(doc: Dict[str, Any]) -> Tuple[int, str, Any]:
            value = getter(doc)
            if value is _MISSING or value is None:
                return (0, "", 0)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return (1, "number", value)
            return (1, type(value).__name__, value)
        return key

    def clear(self) -> None:
        """Drop all databases, containers and items."""
        with self._lock:
            self._databases.clear()
            self._containers.clear()
            self._documents.clear()
            self._failures.clear()
            self._unavailable = False
            self.calls.clear()
