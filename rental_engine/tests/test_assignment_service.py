import os
import shutil
import tempfile
import unittest
from datetime import date

from sqlalchemy import select

from rental_engine.models.rental_models import ContractAsset, RentalContract
from rental_engine.models.states import HOLDING_CONTRACT_STATUSES
from rental_engine.schemas.rentals import UpdateContractDto
from rental_engine.services.asset_service import get_asset
from rental_engine.services.assignment_service import find_open_assignment
from rental_engine.services.contract_service import get_contract, update_contract
from rental_engine.services.errors import ConflictError, InvalidInputError, InvalidStateError, NotFoundError
from rental_engine.services.event_log import list_events_by_type
from rental_engine.services.lifecycle_service import change_state, get_asset_state
from rental_engine.tests.support import (
    OTHER_SCOPE,
    SCOPE,
    make_session_factory,
    seed_asset,
    seed_assignment,
    seed_contract,
)


class AssignmentServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        seed_asset(self.db, "A1")
        seed_contract(self.db, "C1")
        seed_contract(self.db, "C2")

    def tearDown(self):
        self.db.close()

    def _open_assignments(self, asset_id):
        stmt = (
            select(ContractAsset)
            .where(ContractAsset.AssetID == asset_id)
            .where(ContractAsset.ActualEnd.is_(None))
        )
        return self.db.execute(stmt).scalars().all()

    def test_assignment_deploys_asset_to_obra(self):
        contract_asset = seed_assignment(self.db, obra="Obra Norte")

        self.assertEqual(contract_asset.ContractID, "C1")
        self.assertEqual(contract_asset.EstimatedEnd, date(2025, 1, 10))
        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "IN_USE")
        self.assertEqual(get_asset(self.db, SCOPE, "A1").CurrentLocation, "Obra Norte")
        self.assertEqual(find_open_assignment(self.db, "A1").ContractAssetID, contract_asset.ContractAssetID)

        # AVAILABLE -> RESERVED -> IN_USE, both recorded.
        changes = list_events_by_type(self.db, SCOPE, "asset.state_changed")
        self.assertEqual(len(changes), 2)
        self.assertEqual(len(list_events_by_type(self.db, SCOPE, "asset.assigned_to_contract")), 1)

    def test_assigning_in_use_asset_reports_in_use(self):
        seed_assignment(self.db, contract_id="C1")

        with self.assertRaises(InvalidStateError) as ctx:
            seed_assignment(self.db, contract_id="C2")

        self.assertIn("in_use", str(ctx.exception))
        self.assertEqual(ctx.exception.current_state, "IN_USE")
        self.assertEqual(len(self._open_assignments("A1")), 1)

    def test_open_assignment_blocks_second_contract(self):
        seed_assignment(self.db, contract_id="C1")
        # Force the state back without closing the assignment.
        state_row = get_asset_state(self.db, SCOPE, "A1")
        state_row.CurrentState = "AVAILABLE"
        self.db.commit()

        with self.assertRaises(ConflictError):
            seed_assignment(self.db, contract_id="C2")

        self.assertEqual(len(self._open_assignments("A1")), 1)
        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "AVAILABLE")

    def test_draft_contract_accepts_assignment_but_finished_or_paused_do_not(self):
        seed_contract(self.db, "C3", status="DRAFT")
        seed_contract(self.db, "C4", status="PAUSED")
        seed_asset(self.db, "A2")

        with self.assertRaises(InvalidStateError):
            seed_assignment(self.db, asset_id="A2", contract_id="C4")
        self.assertEqual(get_asset_state(self.db, SCOPE, "A2").CurrentState, "AVAILABLE")

        seed_assignment(self.db, asset_id="A2", contract_id="C3")
        self.assertEqual(get_asset_state(self.db, SCOPE, "A2").CurrentState, "IN_USE")

    def test_maintenance_asset_cannot_be_assigned(self):
        change_state(self.db, SCOPE, "A1", "MAINTENANCE")
        with self.assertRaises(InvalidStateError) as ctx:
            seed_assignment(self.db)
        self.assertIn("maintenance", str(ctx.exception))
        self.assertEqual(self._open_assignments("A1"), [])

    def test_estimates_are_validated_before_any_write(self):
        with self.assertRaises(InvalidInputError):
            seed_assignment(self.db, start=date(2025, 1, 10), end=date(2025, 1, 1))
        with self.assertRaises(InvalidInputError):
            seed_assignment(self.db, obra="  ")
        with self.assertRaises(InvalidInputError):
            seed_assignment(self.db, hours=-5)
        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "AVAILABLE")

    def _held_assignments(self, asset_id):
        stmt = (
            select(ContractAsset)
            .join(RentalContract, RentalContract.ContractID == ContractAsset.ContractID)
            .where(ContractAsset.AssetID == asset_id)
            .where(ContractAsset.ActualEnd.is_(None))
            .where(RentalContract.Status.in_(HOLDING_CONTRACT_STATUSES))
        )
        return [row.ContractID for row in self.db.execute(stmt).scalars().all()]

    def test_asset_with_open_assignment_cannot_be_released_manually(self):
        seed_assignment(self.db, contract_id="C1")
        update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="PAUSED"))

        with self.assertRaises(InvalidStateError):
            change_state(self.db, SCOPE, "A1", "AVAILABLE")

        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "IN_USE")
        with self.assertRaises(InvalidStateError):
            seed_assignment(self.db, contract_id="C2")
        self.assertEqual(self._held_assignments("A1"), [])

    def test_reactivating_contract_cannot_double_book_asset(self):
        seed_assignment(self.db, contract_id="C1")
        update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="PAUSED"))
        # Released outside the workflows while C1 is on hold.
        state_row = get_asset_state(self.db, SCOPE, "A1")
        state_row.CurrentState = "AVAILABLE"
        self.db.commit()
        seed_assignment(self.db, contract_id="C2")

        with self.assertRaises(ConflictError):
            update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="ACTIVE"))
        with self.assertRaises(ConflictError):
            update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="DRAFT"))

        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "PAUSED")
        self.assertEqual(self._held_assignments("A1"), ["C2"])

    def test_reactivating_contract_keeps_uncontested_assignment(self):
        seed_assignment(self.db, contract_id="C1")
        update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="PAUSED"))

        update_contract(self.db, SCOPE, "C1", UpdateContractDto(status="ACTIVE"))

        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "ACTIVE")
        self.assertEqual(self._held_assignments("A1"), ["C1"])

    def test_unknown_or_foreign_entities_are_not_found(self):
        with self.assertRaises(NotFoundError):
            seed_assignment(self.db, asset_id="missing")
        with self.assertRaises(NotFoundError):
            seed_assignment(self.db, contract_id="missing")
        with self.assertRaises(NotFoundError):
            seed_assignment(self.db, scope=OTHER_SCOPE)


class ConcurrentAssignmentTests(unittest.TestCase):
    """Two sessions against one file-backed database."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        url = "sqlite+pysqlite:///" + os.path.join(self.tmpdir, "engine.db")
        self.factory = make_session_factory(url)
        with self.factory() as db:
            seed_asset(db, "A1")
            seed_contract(db, "C1")
            seed_contract(db, "C2")

    def tearDown(self):
        self.factory.kw["bind"].dispose()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_stale_session_cannot_assign_taken_asset(self):
        first = self.factory()
        second = self.factory()
        try:
            # The first session has seen the asset as AVAILABLE.
            self.assertEqual(get_asset_state(first, SCOPE, "A1").CurrentState, "AVAILABLE")

            seed_assignment(second, contract_id="C1")

            with self.assertRaises((ConflictError, InvalidStateError)):
                seed_assignment(first, contract_id="C2")
        finally:
            first.close()
            second.close()

        with self.factory() as db:
            open_rows = db.execute(
                select(ContractAsset).where(ContractAsset.AssetID == "A1").where(ContractAsset.ActualEnd.is_(None))
            ).scalars().all()
            self.assertEqual([row.ContractID for row in open_rows], ["C1"])
            self.assertEqual(get_asset_state(db, SCOPE, "A1").CurrentState, "IN_USE")

    def test_stale_state_write_is_a_conflict(self):
        first = self.factory()
        second = self.factory()
        try:
            self.assertEqual(get_asset_state(first, SCOPE, "A1").CurrentState, "AVAILABLE")

            change_state(second, SCOPE, "A1", "MAINTENANCE")

            with self.assertRaises((ConflictError, InvalidStateError)):
                change_state(first, SCOPE, "A1", "RESERVED")
        finally:
            first.close()
            second.close()

        with self.factory() as db:
            self.assertEqual(get_asset_state(db, SCOPE, "A1").CurrentState, "MAINTENANCE")


if __name__ == "__main__":
    unittest.main()
