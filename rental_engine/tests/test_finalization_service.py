import unittest
from unittest import mock

from rental_engine.schemas.rentals import CreateIncidentDto, UpdateContractAssetDto
from rental_engine.services import finalization_service
from rental_engine.services.asset_service import get_asset
from rental_engine.services.contract_service import get_contract, get_contract_asset, update_contract_asset
from rental_engine.services.errors import ConflictError, FinalizationError, InvalidStateError
from rental_engine.services.event_log import list_events_by_type
from rental_engine.services.finalization_service import evaluate_asset_post_obra, finalize_contract
from rental_engine.services.incident_service import report_incident, resolve_incident
from rental_engine.services.lifecycle_service import decommission, get_asset_state, transition
from rental_engine.tests.support import SCOPE, make_session_factory, seed_asset, seed_assignment, seed_contract


class FinalizationServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session_factory()()
        seed_contract(self.db, "C1")
        self.contract_assets = {}
        for asset_id in ("A1", "A2", "A3"):
            seed_asset(self.db, asset_id)
            self.contract_assets[asset_id] = seed_assignment(self.db, asset_id=asset_id, contract_id="C1")

    def tearDown(self):
        self.db.close()

    def test_finalize_returns_every_asset_and_finishes_contract(self):
        result = finalize_contract(self.db, SCOPE, "C1")

        self.assertEqual(result["status"], "FINISHED")
        self.assertEqual(sorted(item["assetId"] for item in result["assetsReturned"]), ["A1", "A2", "A3"])
        self.assertEqual({item["status"] for item in result["assetsReturned"]}, {"RETURNED"})
        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "FINISHED")
        for asset_id, contract_asset in self.contract_assets.items():
            self.assertEqual(get_asset_state(self.db, SCOPE, asset_id).CurrentState, "RETURNED")
            self.assertEqual(get_asset(self.db, SCOPE, asset_id).CurrentLocation, "TALLER")
            self.assertIsNotNone(get_contract_asset(self.db, SCOPE, contract_asset.ContractAssetID).ActualEnd)

        finished = list_events_by_type(self.db, SCOPE, "contract.finished")
        self.assertEqual(len(finished), 1)
        self.assertIn('"assetsReturned": 3', finished[0].Payload)

    def test_second_finalization_fails(self):
        finalize_contract(self.db, SCOPE, "C1")

        with self.assertRaises(InvalidStateError) as ctx:
            finalize_contract(self.db, SCOPE, "C1")

        self.assertEqual(ctx.exception.current_state, "FINISHED")
        self.assertEqual(len(list_events_by_type(self.db, SCOPE, "asset.returned")), 3)

    def test_already_closed_assignments_are_skipped(self):
        closed = self.contract_assets["A3"]
        update_contract_asset(
            self.db,
            SCOPE,
            closed.ContractAssetID,
            UpdateContractAssetDto(actualEnd=closed.EstimatedEnd),
        )

        result = finalize_contract(self.db, SCOPE, "C1", depot_location="Depot Sur")

        self.assertEqual(sorted(item["assetId"] for item in result["assetsReturned"]), ["A1", "A2"])
        self.assertEqual(result["skippedContractAssets"], [closed.ContractAssetID])
        self.assertEqual(get_asset_state(self.db, SCOPE, "A3").CurrentState, "IN_USE")
        self.assertEqual(get_asset(self.db, SCOPE, "A1").CurrentLocation, "Depot Sur")

    def test_unresolved_incident_blocks_finalization(self):
        incident = report_incident(
            self.db, SCOPE, CreateIncidentDto(assetID="A2", contractID="C1", description="Broken track")
        )

        with self.assertRaises(InvalidStateError):
            finalize_contract(self.db, SCOPE, "C1")
        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "ACTIVE")

        resolve_incident(self.db, SCOPE, incident.IncidentID, "CONTINUE")
        result = finalize_contract(self.db, SCOPE, "C1")
        self.assertEqual(len(result["assetsReturned"]), 3)

    def test_failure_mid_loop_rolls_back_every_return(self):
        calls = []

        def failing_transition(db, scope, asset_id, target_state, *args, **kwargs):
            calls.append(asset_id)
            if len(calls) == 2:
                raise RuntimeError("state store unavailable")
            return transition(db, scope, asset_id, target_state, *args, **kwargs)

        with mock.patch.object(finalization_service, "transition", side_effect=failing_transition):
            with self.assertRaises(FinalizationError) as ctx:
                finalize_contract(self.db, SCOPE, "C1")

        self.assertEqual(ctx.exception.failed_asset_id, calls[1])
        self.assertEqual(ctx.exception.rolled_back_asset_ids, [calls[0]])
        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "ACTIVE")
        for asset_id, contract_asset in self.contract_assets.items():
            self.assertEqual(get_asset_state(self.db, SCOPE, asset_id).CurrentState, "IN_USE")
            self.assertIsNone(get_contract_asset(self.db, SCOPE, contract_asset.ContractAssetID).ActualEnd)
        self.assertEqual(list_events_by_type(self.db, SCOPE, "asset.returned"), [])

        result = finalize_contract(self.db, SCOPE, "C1")
        self.assertEqual(len(result["assetsReturned"]), 3)

    def test_conflict_mid_loop_is_not_wrapped(self):
        calls = []

        def conflicting_transition(db, scope, asset_id, target_state, *args, **kwargs):
            calls.append(asset_id)
            if len(calls) == 2:
                raise ConflictError(f"Asset {asset_id} was modified concurrently; retry the operation.")
            return transition(db, scope, asset_id, target_state, *args, **kwargs)

        with mock.patch.object(finalization_service, "transition", side_effect=conflicting_transition):
            with self.assertRaises(ConflictError) as ctx:
                finalize_contract(self.db, SCOPE, "C1")

        self.assertNotIsInstance(ctx.exception, FinalizationError)
        self.assertEqual(ctx.exception.kind, "conflict")
        self.assertEqual(get_contract(self.db, SCOPE, "C1").Status, "ACTIVE")
        self.assertEqual(get_asset_state(self.db, SCOPE, calls[0]).CurrentState, "IN_USE")

    def test_decommissioned_asset_stays_out_of_service(self):
        decommission(self.db, SCOPE, "A1", "destroyed on site")
        location_before = get_asset(self.db, SCOPE, "A1").CurrentLocation

        result = finalize_contract(self.db, SCOPE, "C1")

        self.assertEqual(result["stateKeptAssetIds"], ["A1"])
        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "OUT_OF_SERVICE")
        self.assertEqual(get_asset(self.db, SCOPE, "A1").CurrentLocation, location_before)
        closed = get_contract_asset(self.db, SCOPE, self.contract_assets["A1"].ContractAssetID)
        self.assertIsNotNone(closed.ActualEnd)
        self.assertEqual(get_asset_state(self.db, SCOPE, "A2").CurrentState, "RETURNED")

        with self.assertRaises(InvalidStateError):
            evaluate_asset_post_obra(self.db, SCOPE, closed.ContractAssetID, needs_maintenance=False)
        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "OUT_OF_SERVICE")

    def test_asset_sent_to_maintenance_stays_in_maintenance(self):
        incident = report_incident(
            self.db, SCOPE, CreateIncidentDto(assetID="A2", contractID="C1", description="Engine seized")
        )
        resolve_incident(self.db, SCOPE, incident.IncidentID, "REPLACE")

        result = finalize_contract(self.db, SCOPE, "C1")

        self.assertEqual(result["stateKeptAssetIds"], ["A2"])
        self.assertEqual(get_asset_state(self.db, SCOPE, "A2").CurrentState, "MAINTENANCE")
        self.assertEqual(get_asset(self.db, SCOPE, "A2").CurrentLocation, "TALLER")
        self.assertIsNotNone(get_contract_asset(self.db, SCOPE, self.contract_assets["A2"].ContractAssetID).ActualEnd)

    def test_post_obra_evaluation(self):
        finalize_contract(self.db, SCOPE, "C1")

        evaluate_asset_post_obra(self.db, SCOPE, self.contract_assets["A1"].ContractAssetID, needs_maintenance=True)
        evaluate_asset_post_obra(self.db, SCOPE, self.contract_assets["A2"].ContractAssetID, needs_maintenance=False)

        self.assertEqual(get_asset_state(self.db, SCOPE, "A1").CurrentState, "MAINTENANCE")
        self.assertEqual(get_asset_state(self.db, SCOPE, "A2").CurrentState, "AVAILABLE")
        self.assertTrue(get_contract_asset(self.db, SCOPE, self.contract_assets["A1"].ContractAssetID).NeedsPostObraMaintenance)

        with self.assertRaises(InvalidStateError):
            evaluate_asset_post_obra(self.db, SCOPE, self.contract_assets["A2"].ContractAssetID, needs_maintenance=True)


if __name__ == "__main__":
    unittest.main()
