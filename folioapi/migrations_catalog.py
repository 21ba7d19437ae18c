"""Catalog of schema migrations executed by the MigrationService.

Migrations are either ``.sql`` files named ``<version>_<name>.sql`` or Python
callables registered with the text that defines them. The checksum always
covers the definition text, so editing an applied migration is detected.
"""

import hashlib
import logging
import os
import re

logger = logging.getLogger(__name__)

SQL_FILE_RE = re.compile(r"^(?P<version>[^_]+)_(?P<name>.+)\.sql$")
_LEADING_NUMBER_RE = re.compile(r"^(\d+)(.*)$")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")
_IDENTIFIER_CHAR_RE = re.compile(r"\w")


def checksum_of(definition):
    return hashlib.sha256(definition.encode("utf-8")).hexdigest()


def version_key(version):
    """Sort key: numeric prefixes compare as numbers, so "2" sorts before "10"."""
    match = _LEADING_NUMBER_RE.match(version)
    if match:
        return (0, int(match.group(1)), match.group(2))
    return (1, 0, version)


def _quoted_end(sql, start, quote):
    """Index just past the literal opened at ``start``; doubled quotes escape."""
    position = start + 1
    while True:
        position = sql.find(quote, position)
        if position == -1:
            return len(sql)
        if sql.startswith(quote * 2, position):
            position += 2
            continue
        return position + 1


def split_sql_statements(sql):
    """Split a script on top-level ``;`` and drop comments.

    String literals, quoted identifiers and ``$tag$`` bodies are copied whole,
    so a ``;`` inside a function body or a value does not end the statement.
    """
    statements = []
    current = []
    position = 0
    length = len(sql)
    while position < length:
        char = sql[position]
        if sql.startswith("--", position):
            end = sql.find("\n", position)
            position = length if end == -1 else end
            continue
        if sql.startswith("/*", position):
            end = sql.find("*/", position + 2)
            position = length if end == -1 else end + 2
            current.append(" ")
            continue

        end = None
        if char in ("'", '"'):
            end = _quoted_end(sql, position, char)
        elif char == "$":
            # $1 and name$ are not quote openers
            after_word = _IDENTIFIER_CHAR_RE.match(sql[position - 1 : position])
            tag = None if after_word else _DOLLAR_TAG_RE.match(sql, position)
            if tag:
                close = sql.find(tag.group(), tag.end())
                end = length if close == -1 else close + len(tag.group())
        if end is not None:
            current.append(sql[position:end])
            position = end
            continue

        if char == ";":
            statements.append("".join(current))
            current = []
        else:
            current.append(char)
        position += 1

    statements.append("".join(current))
    return [statement.strip() for statement in statements if statement.strip()]


class MigrationDefinition:
    """One catalog entry. ``apply(session)`` runs inside the caller's transaction."""

    def __init__(self, version, name, checksum, apply):
        if not version or not isinstance(version, str):
            raise ValueError("Migration version must be a non-empty string")
        if not callable(apply):
            raise ValueError(f"Migration {version} has no apply operation")
        self.version = version
        self.name = name
        self.checksum = checksum
        self.apply = apply

    def __repr__(self):
        return f"<MigrationDefinition {self.version} {self.name}>"

    @classmethod
    def from_sql(cls, version, name, sql):
        statements = split_sql_statements(sql)

        def apply(session):
            connection = session.connection()
            for statement in statements:
                # Raw driver execution, no bind parameter parsing of the text
                connection.exec_driver_sql(statement)

        return cls(version, name, checksum_of(sql), apply)

    @classmethod
    def from_callable(cls, version, name, definition, apply):
        return cls(version, name, checksum_of(definition), apply)

    def serialize(self):
        return {"version": self.version, "name": self.name, "checksum": self.checksum}


class MigrationCatalog:
    """Migration definitions, iterated in ascending version order."""

    def __init__(self, definitions=()):
        self._definitions = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition):
        if definition.version in self._definitions:
            raise ValueError(f"Duplicate migration version {definition.version}")
        self._definitions[definition.version] = definition
        return definition

    def add_sql(self, version, name, sql):
        return self.register(MigrationDefinition.from_sql(version, name, sql))

    def get(self, version):
        return self._definitions.get(version)

    def __iter__(self):
        definitions = self._definitions.values()
        return iter(sorted(definitions, key=lambda d: version_key(d.version)))

    def __len__(self):
        return len(self._definitions)

    @classmethod
    def from_directory(cls, path):
        catalog = cls()
        if not path or not os.path.isdir(path):
            logger.warning(f"[MIGRATION]: Catalog directory {path} not found")
            return catalog

        for filename in sorted(os.listdir(path)):
            match = SQL_FILE_RE.match(filename)
            if not match:
                continue
            with open(os.path.join(path, filename), encoding="utf-8") as f:
                sql = f.read()
            catalog.add_sql(match.group("version"), match.group("name"), sql)

        logger.info(f"[MIGRATION]: Loaded {len(catalog)} migrations from {path}")
        return catalog
