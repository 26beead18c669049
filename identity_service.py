"""
Contact-linking resolution.

A request flows matcher -> grouper -> resolver -> projector inside one
store transaction. Clusters are kept flat: every secondary links straight
to its cluster's primary, and the primary is the oldest record.
"""

from typing import Dict, List, Optional

from tenacity import (
    RetryCallState,
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from contact_store import ContactSession, ContactStore
from db_models import ContactRecord, ContactResponse, LinkPrecedence
from errors import (
    InvariantViolationError,
    StaleRecordError,
    StoreUnavailableError,
    TransientStoreError,
)
from logger import get_logger


def find_matching_contacts(session: ContactSession, email: Optional[str] = None,
                           phone: Optional[str] = None) -> List[ContactRecord]:
    return session.find_contacts(email, phone)


def check_cluster(anchor_id: int, members: List[ContactRecord]) -> None:
    """Raise InvariantViolationError unless members form a flat one-primary cluster."""
    primaries = [c for c in members if c.is_primary]
    if len(primaries) != 1 or primaries[0].id != anchor_id:
        raise InvariantViolationError(
            f"Cluster {anchor_id} has primaries {[c.id for c in primaries]}"
        )
    for contact in members:
        if not contact.is_primary and contact.linkedId != anchor_id:
            raise InvariantViolationError(
                f"Secondary {contact.id} links to {contact.linkedId}, expected {anchor_id}"
            )


def group_contacts_by_primary(session: ContactSession,
                              contacts: List[ContactRecord]) -> List[List[ContactRecord]]:
    """Expand matched contacts into their complete clusters, one per anchor."""
    groups: Dict[int, List[ContactRecord]] = {}
    for contact in contacts:
        anchor_id = contact.anchor_id
        if anchor_id is None:
            raise InvariantViolationError(f"Secondary {contact.id} has no linkedId")
        groups.setdefault(anchor_id, []).append(contact)

    complete_groups = []
    for anchor_id in groups:
        anchor = session.get_contact(anchor_id)
        if anchor is None or anchor.deletedAt is not None:
            raise InvariantViolationError(f"Anchor {anchor_id} is missing or deleted")
        if not anchor.is_primary:
            # a secondary pointing at another secondary
            raise InvariantViolationError(f"Anchor {anchor_id} is not a primary contact")

        members = session.get_all_linked_contacts(anchor_id)
        check_cluster(anchor_id, members)
        complete_groups.append(members)

    return complete_groups


def needs_new_secondary(members: List[ContactRecord], email: Optional[str] = None,
                        phone: Optional[str] = None) -> bool:
    """True when the request carries an email or phone the cluster lacks."""
    if email and not any(c.email == email for c in members):
        return True
    if phone and not any(c.phoneNumber == phone for c in members):
        return True
    return False


def get_primary(members: List[ContactRecord]) -> ContactRecord:
    for contact in members:
        if contact.is_primary:
            return contact
    raise InvariantViolationError("Cluster has no primary contact")


def select_oldest_primary(groups: List[List[ContactRecord]]) -> ContactRecord:
    """Oldest primary by createdAt; equal timestamps fall back to the lower id."""
    primaries = [get_primary(group) for group in groups]
    return min(primaries, key=lambda c: (c.createdAt, c.id))


def merge_contact_groups(session: ContactSession, groups: List[List[ContactRecord]],
                         email: Optional[str] = None,
                         phone: Optional[str] = None) -> List[ContactRecord]:
    """Fold every cluster into the one anchored on the oldest primary."""
    oldest_primary = select_oldest_primary(groups)
    anchor_id = oldest_primary.id

    for group in groups:
        primary = get_primary(group)
        if primary.id != anchor_id:
            session.update_to_secondary(primary.id, anchor_id)

    for group in groups:
        for contact in group:
            if not contact.is_primary and contact.linkedId != anchor_id:
                session.update_contact(contact.id, linkedId=anchor_id)

    all_contacts = [contact for group in groups for contact in group]
    if needs_new_secondary(all_contacts, email, phone):
        session.create_contact(email, phone, anchor_id, LinkPrecedence.SECONDARY)

    merged = session.get_all_linked_contacts(anchor_id)
    check_cluster(anchor_id, merged)
    return merged


def resolve(session: ContactSession, email: Optional[str] = None,
            phone: Optional[str] = None) -> List[ContactRecord]:
    """Apply whatever writes the request implies and return the final cluster."""
    logger = get_logger()
    existing_contacts = find_matching_contacts(session, email, phone)
    groups = group_contacts_by_primary(session, existing_contacts)

    if not groups:
        contact = session.create_contact(email, phone, None, LinkPrecedence.PRIMARY)
        logger.info("Created primary contact", contact_id=contact.id)
        return [contact]

    if len(groups) == 1:
        members = groups[0]
        if needs_new_secondary(members, email, phone):
            primary = get_primary(members)
            contact = session.create_contact(email, phone, primary.id, LinkPrecedence.SECONDARY)
            members.append(contact)
            logger.info("Created secondary contact", contact_id=contact.id, primary_id=primary.id)
        else:
            logger.debug("Cluster already knows request", primary_id=get_primary(members).id)
        return members

    merged = merge_contact_groups(session, groups, email, phone)
    logger.info(
        "Merged contact clusters",
        primary_id=get_primary(merged).id,
        merged_primaries=[get_primary(group).id for group in groups],
    )
    return merged


def build_contact_response(contacts: List[ContactRecord]) -> ContactResponse:
    primary = get_primary(contacts)
    secondaries = [c for c in contacts if not c.is_primary]

    emails = []
    phone_numbers = []
    for contact in [primary] + secondaries:
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=[c.id for c in secondaries],
    )


class IdentityService:
    """Runs one identify request per transaction, retrying transient failures."""

    RETRYABLE = (TransientStoreError, StaleRecordError)

    def __init__(self, store: ContactStore, max_retries: int = 3,
                 base_delay: float = 0.05, max_delay: float = 1.0):
        self.store = store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def _identify_once(self, email: Optional[str], phone: Optional[str]) -> ContactResponse:
        with self.store.transaction() as session:
            cluster = resolve(session, email, phone)
            return build_contact_response(cluster)

    def identify(self, email: Optional[str] = None,
                 phone_number: Optional[str] = None) -> ContactResponse:
        """
        Resolve (email, phone_number) to its identity cluster.

        Each attempt opens a new transaction and starts again from matching.

        Raises:
            InvariantViolationError: stored data breaks the cluster invariants
            StoreUnavailableError: the store stayed busy through every retry
        """
        logger = get_logger()

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "Retrying identify after store conflict",
                attempt=retry_state.attempt_number,
                error=str(retry_state.outcome.exception()),
                delay=retry_state.next_action.sleep,
            )

        @retry(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(self.RETRYABLE),
            before_sleep=log_retry,
        )
        def _do() -> ContactResponse:
            return self._identify_once(email, phone_number)

        try:
            return _do()
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.error("Identify failed, store unavailable", error=str(error))
            raise StoreUnavailableError(
                f"Failed after {self.max_retries + 1} attempts: {error}"
            ) from error
