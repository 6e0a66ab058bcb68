"""CLI for replaying dispatch scenarios defined in JSON configs."""
from __future__ import annotations

import argparse
import json
import logging
from collections import Counter
from pathlib import Path
from typing import Callable, Dict, List, Optional

from fleet import DispatchCenter, DispatchError, DispatchSettings, GeoPoint, parse_credential
from fleet.events import DomainEvent


def build_center(config: Dict) -> DispatchCenter:
    settings = DispatchSettings(**config.get("settings", {}))
    return DispatchCenter(settings)


def _point(value: Optional[Dict]) -> Optional[GeoPoint]:
    return GeoPoint.from_dict(value)


class ScenarioRunner:
    """Applies scenario steps in order, resolving symbolic refs to generated ids."""

    def __init__(self, center: DispatchCenter) -> None:
        self.center = center
        self.refs: Dict[str, str] = {}
        self.handlers: Dict[str, Callable[[Dict], object]] = {
            "register": self._register,
            "location": self._location,
            "status": self._status,
            "request": self._request,
            "match": self._match,
            "accept": self._accept,
            "transition": self._transition,
            "force_complete": self._force_complete,
        }

    def run(self, steps: List[Dict]) -> List[Dict]:
        outcomes: List[Dict] = []
        for index, step in enumerate(steps):
            op = step.get("op")
            handler = self.handlers.get(op)
            outcome: Dict = {"step": index, "op": op}
            if handler is None:
                outcome.update(ok=False, error="unknown_op")
            else:
                try:
                    outcome.update(ok=True, result=handler(step))
                except DispatchError as exc:
                    outcome.update(ok=False, error=exc.code, detail=exc.message)
            outcomes.append(outcome)
        return outcomes

    def _resolve(self, ref: str) -> str:
        return self.refs.get(ref, ref)

    def _register(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        ambulance = self.center.register_ambulance(
            actor,
            name=step.get("name", step.get("ref", "ambulance")),
            registration=step["registration"],
            kind=step.get("type", "basic"),
            capacity=step.get("capacity", 1),
            location=_point(step.get("location")),
            provider_id=step.get("provider"),
        )
        if step.get("ref"):
            self.refs[step["ref"]] = ambulance.ambulance_id
        if step.get("status"):
            ambulance = self.center.set_ambulance_status(actor, ambulance.ambulance_id, step["status"])
        return ambulance.to_dict()

    def _location(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        ambulance_id = self._resolve(step["ambulance"])
        return self.center.set_ambulance_location(actor, ambulance_id, _point(step["location"])).to_dict()

    def _status(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        ambulance_id = self._resolve(step["ambulance"])
        return self.center.set_ambulance_status(
            actor, ambulance_id, step["status"], force=step.get("force", False)
        ).to_dict()

    def _request(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        preferred = step.get("preferred_ambulance")
        trip = self.center.create_trip_request(
            actor,
            request_location=_point(step["location"]),
            patient_details=step.get("patient", {}),
            emergency_details=step.get("emergency", ""),
            destination_location=_point(step.get("destination")),
            preferred_ambulance_id=self._resolve(preferred) if preferred else None,
        )
        if step.get("ref"):
            self.refs[step["ref"]] = trip.trip_id
        return trip.to_dict()

    def _match(self, step: Dict) -> List[Dict]:
        actor = parse_credential(step["as"])
        matches = self.center.match_ambulances(
            actor,
            _point(step["location"]),
            max_distance_km=step.get("max_distance_km"),
            limit=step.get("limit"),
        )
        return [match.to_dict() for match in matches]

    def _accept(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        return self.center.accept_trip(
            actor, self._resolve(step["trip"]), self._resolve(step["ambulance"])
        ).to_dict()

    def _transition(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        return self.center.transition_trip(
            actor, self._resolve(step["trip"]), step["status"], reason=step.get("reason")
        ).to_dict()

    def _force_complete(self, step: Dict) -> Dict:
        actor = parse_credential(step["as"])
        ambulance, completed = self.center.force_complete_trips(
            actor, self._resolve(step["ambulance"]), step.get("target", "AVAILABLE")
        )
        return {"ambulance": ambulance.to_dict(), "completedTripIds": completed}


def run_scenario(center: DispatchCenter, config: Dict) -> Dict:
    events: List[DomainEvent] = []
    with center.bus.subscribe("*", lambda event, topic: events.append(event)):
        outcomes = ScenarioRunner(center).run(config.get("steps", []))
    return {
        "outcomes": outcomes,
        "event_counts": dict(Counter(event.kind for event in events)),
        "ambulances": [a.to_dict() for a in center.registry.list()],
        "trips": [t.to_dict() for t in center.ledger.list()],
    }


def save_results(output_path: Optional[Path], data: Dict) -> None:
    if not output_path:
        return
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(data, indent=2))


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("config", type=Path, help="Path to a JSON scenario configuration file")
    parser.add_argument(
        "--output",
        type=Path,
        help="Optional file path to write step outcomes and final state as JSON",
    )
    parser.add_argument("--verbose", action="store_true", help="Log engine activity")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    config = json.loads(args.config.read_text())
    center = build_center(config)
    report = run_scenario(center, config)

    results = {
        "scenario": config.get("name", args.config.stem),
        "description": config.get("description"),
        **report,
    }
    save_results(args.output, results)

    print(f"Scenario: {results['scenario']}")
    if results["description"]:
        print(results["description"])
    failed = [o for o in report["outcomes"] if not o["ok"]]
    print(f"Steps: {len(report['outcomes'])} ({len(failed)} failed)")
    for outcome in failed:
        print(f"  step {outcome['step']} {outcome['op']}: {outcome['error']} {outcome.get('detail', '')}")
    print("Ambulances:")
    for ambulance in report["ambulances"]:
        print(f"  {ambulance['id']}: {ambulance['status']} trip={ambulance['activeTripId']}")
    print("Trips:")
    for trip in report["trips"]:
        print(f"  {trip['id']}: {trip['status']} ambulance={trip['ambulanceId']}")
    print(f"Events: {sum(report['event_counts'].values())}")
    if args.output:
        print(f"Saved results to {args.output}")


if __name__ == "__main__":
    main()
