"""
model_persistence.py
~~~~~~~~~~~~~~~~~~~~

Persistence for neural network models.

Two storage forms are supported:

- JSON snapshot files (``network.json``) written atomically after every
  training batch and read back at start-up.
- A SQLite catalog of named snapshots with training metadata, used by the
  API server to keep networks across restarts.
"""

import json
import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional

import numpy as np

from .errors import PersistenceError
from .network import Network

# Configure module logger
logger = logging.getLogger(__name__)


class NetworkEncoder(json.JSONEncoder):
    """JSON encoder that understands numpy arrays and scalars."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.generic):
            return obj.item()
        return super().default(obj)


def dumps_network(network: Network) -> str:
    """Serialize ``network`` to human-readable JSON text."""
    return json.dumps(network.to_dict(), cls=NetworkEncoder, indent=2)


def loads_network(text: str) -> Network:
    """
    Rebuild a network from ``dumps_network`` output.

    Raises:
        PersistenceError: If the text is not valid JSON or does not
            describe a consistent network.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise PersistenceError(f"Snapshot is not valid JSON: {e}") from e

    try:
        return Network.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceError(f"Snapshot is structurally invalid: {e}") from e


def save_network(network: Network, path: str) -> None:
    """
    Write a JSON snapshot of ``network`` to ``path``.

    The snapshot is written to a temporary file in the target directory
    and renamed over ``path``, so a crash mid-write leaves the previous
    snapshot intact.

    Raises:
        PersistenceError: If the file cannot be written.

    Example:
        >>> net = Network([784, 128, 10])
        >>> save_network(net, "network.json")
    """
    directory = os.path.dirname(os.path.abspath(path))
    text = dumps_network(network)

    try:
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(
            dir=directory, prefix='.network-', suffix='.json.tmp'
        )
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except BaseException:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise
    except OSError as e:
        raise PersistenceError(f"Cannot write snapshot '{path}': {e}") from e

    logger.debug(f"Saved network {network.sizes} to '{path}'")


def load_network(path: str) -> Network:
    """
    Read a network from a JSON snapshot.

    Raises:
        PersistenceError: If the file is missing, unreadable or invalid.

    Example:
        >>> net = load_network("network.json")
        >>> net.sizes
        [784, 128, 10]
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise PersistenceError(f"Cannot read snapshot '{path}': {e}") from e

    try:
        network = loads_network(text)
    except PersistenceError as e:
        raise PersistenceError(f"Cannot load snapshot '{path}': {e}") from e

    logger.info(f"Loaded network {network.sizes} from '{path}'")
    return network


class ModelDatabase:
    """
    SQLite catalog of named network snapshots.

    The database stores:
    - Network metadata (architecture, training status, accuracy)
    - The JSON snapshot produced by ``dumps_network``

    Every database or decoding failure is raised as ``PersistenceError``.
    """

    def __init__(self, db_path: str = 'models/networks.db'):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._initialize_schema()

    def _ensure_directory(self) -> None:
        """Create the database directory if it doesn't exist."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                raise PersistenceError(
                    f"Cannot create database directory '{db_dir}': {e}"
                ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back on failure and converts
        ``sqlite3.Error`` into ``PersistenceError``.
        """
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise PersistenceError(
                f"Cannot open database '{self.db_path}': {e}"
            ) from e

        conn.row_factory = sqlite3.Row  # Enable column access by name
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _initialize_schema(self) -> None:
        """Create the database schema if it doesn't exist."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                CREATE TABLE IF NOT EXISTS networks (
                    network_id TEXT PRIMARY KEY,
                    architecture TEXT NOT NULL,
                    snapshot TEXT NOT NULL,
                    trained INTEGER NOT NULL DEFAULT 0,
                    accuracy REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE INDEX IF NOT EXISTS idx_created_at
                ON networks(created_at DESC)
            ''')

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            'network_id': row['network_id'],
            'architecture': json.loads(row['architecture']),
            'trained': bool(row['trained']),
            'accuracy': row['accuracy'],
            'created_at': row['created_at'],
            'updated_at': row['updated_at']
        }

    def save_network_to_db(
        self,
        network: Network,
        network_id: str,
        trained: bool = True,
        accuracy: Optional[float] = None
    ) -> None:
        """
        Insert or replace a network in the catalog.

        The original ``created_at`` is kept when an existing entry is
        replaced.

        Raises:
            ValueError: If accuracy is out of valid range
        """
        if accuracy is not None and not 0.0 <= accuracy <= 1.0:
            raise ValueError(
                f"Accuracy must be between 0.0 and 1.0, got {accuracy}"
            )

        snapshot = dumps_network(network)
        architecture_json = json.dumps(network.sizes)

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO networks
                (network_id, architecture, snapshot, trained, accuracy)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(network_id) DO UPDATE SET
                    architecture = excluded.architecture,
                    snapshot = excluded.snapshot,
                    trained = excluded.trained,
                    accuracy = excluded.accuracy,
                    updated_at = CURRENT_TIMESTAMP
            ''', (
                network_id,
                architecture_json,
                snapshot,
                1 if trained else 0,
                accuracy
            ))

        logger.info(
            f"Saved network '{network_id}' with architecture "
            f"{network.sizes}, trained={trained}, accuracy={accuracy}"
        )

    def load_network_from_db(self, network_id: str) -> Optional[Network]:
        """Load a network from the catalog, or None if it is not there."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'SELECT snapshot FROM networks WHERE network_id = ?',
                (network_id,)
            )
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Network '{network_id}' not found")
            return None

        network = loads_network(row['snapshot'])
        logger.info(f"Loaded network '{network_id}'")
        return network

    def list_networks_from_db(self) -> List[Dict[str, Any]]:
        """List all networks with metadata, newest first."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                ORDER BY created_at DESC, network_id
            ''')
            rows = cursor.fetchall()

        try:
            networks = [self._row_to_metadata(row) for row in rows]
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt architecture column: {e}") from e

        logger.debug(f"Listed {len(networks)} networks")
        return networks

    def get_network_metadata_from_db(
        self,
        network_id: str
    ) -> Optional[Dict[str, Any]]:
        """Get network metadata without decoding the snapshot."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                SELECT
                    network_id,
                    architecture,
                    trained,
                    accuracy,
                    created_at,
                    updated_at
                FROM networks
                WHERE network_id = ?
            ''', (network_id,))
            row = cursor.fetchone()

        if row is None:
            logger.warning(f"Metadata for network '{network_id}' not found")
            return None

        try:
            return self._row_to_metadata(row)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt architecture column: {e}") from e

    def delete_network_from_db(self, network_id: str) -> bool:
        """Delete a network; True if it existed."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                'DELETE FROM networks WHERE network_id = ?',
                (network_id,)
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted network '{network_id}'")
        else:
            logger.warning(
                f"Could not delete network '{network_id}': not found"
            )
        return deleted

    def delete_old_networks_from_db(self, days: int) -> int:
        """
        Delete networks created more than ``days`` days ago.

        Returns:
            Number of deleted networks

        Raises:
            ValueError: If days is negative
        """
        if days < 0:
            raise ValueError(f"days must be non-negative, got {days}")

        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "DELETE FROM networks WHERE created_at < datetime('now', ?)",
                (f'-{int(days)} days',)
            )
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} network(s) older than {days} day(s)")
        return deleted
