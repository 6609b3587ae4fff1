"""Abstract store interface for recordops.

The store owns persistence; the engine only sequences calls against it. Every
backend must return outcomes in the order records were submitted.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence

from recordops.config import StoreConfig
from recordops.models import Operation, Record, Result


class Store(ABC):
    """Abstract base class for backing stores.

    All store implementations must implement these methods to provide a
    consistent interface for the batch executor and transaction manager.
    """

    #: Operations ``apply`` understands; upsert and merge are reduced by the
    #: executor before they reach the store.
    APPLY_OPERATIONS = frozenset({Operation.INSERT, Operation.UPDATE, Operation.DELETE})

    def __init__(self, config: Optional[StoreConfig] = None):
        self.config = config or StoreConfig()

    @abstractmethod
    def apply(
        self,
        operation: Operation,
        records: Sequence[Record],
        all_or_nothing: bool = False,
    ) -> List[Result]:
        """Apply one operation to an ordered list of records.

        Args:
            operation: INSERT, UPDATE or DELETE.
            records: Records to mutate, in submission order.
            all_or_nothing: Revert every mutation of this call on the first
                failure.

        Returns:
            One Result per record, ``results[i].index == i``.

        Raises:
            BatchFailure: In atomic mode, after reverting the call.
            StoreUnavailableError: If the store cannot be reached.
        """

    @abstractmethod
    def find_by_key(
        self,
        record_type: str,
        key_field: str,
        key_values: Iterable[str],
    ) -> Dict[str, str]:
        """Resolve external key values to identities in a single lookup.

        Args:
            record_type: Entity type to search.
            key_field: Name of the external key field.
            key_values: Key values to resolve.

        Returns:
            Mapping of matched key value to identity; unmatched keys are
            absent.
        """

    @abstractmethod
    def begin_savepoint(self) -> Any:
        """Checkpoint the current state.

        Returns:
            Opaque token accepted by ``rollback`` and ``release``.
        """

    @abstractmethod
    def rollback(self, token: Any) -> None:
        """Revert every mutation made after ``token`` was taken.

        Tokens taken after ``token`` become invalid; ``token`` stays usable.

        Raises:
            InvalidSavepointError: If the token is unknown or superseded.
        """

    def release(self, token: Any) -> None:
        """Forget ``token`` and every later token without reverting anything."""

    @abstractmethod
    def commit(self) -> None:
        """Finalize pending mutations and drop all savepoints."""

    @abstractmethod
    def reassign_and_delete(
        self,
        master_id: str,
        duplicate_ids: Sequence[str],
        all_or_nothing: bool = False,
    ) -> List[Result]:
        """Move child references from each duplicate to the master, then
        delete the duplicate.

        Args:
            master_id: Identity of the surviving record.
            duplicate_ids: Identities folded into the master, in order.
            all_or_nothing: Revert the whole call on the first failure.

        Returns:
            One Result per duplicate; ``identity`` is the master on success
            and ``related_ids`` lists the re-parented children.
        """

    @abstractmethod
    def get(self, identity: str) -> Optional[Record]:
        """Fetch a stored record by identity, or None if not found."""

    @abstractmethod
    def children_of(self, identity: str) -> List[str]:
        """Identities of records that reference ``identity`` as parent."""

    # Convenience methods with default implementations

    def exists(self, identity: str) -> bool:
        """Check whether a record exists."""
        return self.get(identity) is not None
