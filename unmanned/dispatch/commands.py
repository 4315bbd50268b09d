from __future__ import annotations

import logging
from concurrent.futures import Future, TimeoutError as FutureTimeout
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.state_machine import WaypointNavigator
from ..core.types import Mission, NavigationError, NavigationOutcome, OutcomeStatus, Waypoint
from ..vehicle.api_interface import LinkCommandError, VehicleLink

log = logging.getLogger(__name__)


class CommandRejected(Exception):
    """A host command could not be carried out.

    ``outcome`` is set when the rejection comes from a failed navigation operation.
    """

    def __init__(self, message: str, outcome: Optional[NavigationOutcome] = None) -> None:
        super().__init__(message)
        self.outcome = outcome


# ----------------------------------------------------------------------
# Command payloads
# ----------------------------------------------------------------------
class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class TakeoffCommand(_Command):
    altitude_agl_m: float = Field(gt=0)


class LocationCommand(_Command):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    alt_agl_m: float = 30.0
    hover_s: float = Field(default=0.0, ge=0)
    return_to_start: bool = False


class MissionCommand(_Command):
    # 1-based mission number or mission name
    mission: Union[int, str] = 1
    return_to_start: Optional[bool] = None


class LandingCommand(_Command):
    disarm: bool = True


class OffboardCommand(_Command):
    forward_m_s: float = 0.0
    right_m_s: float = 0.0
    down_m_s: float = 0.0
    yaw_rate_deg_s: float = 0.0


class ShellCommand(_Command):
    command: str = Field(min_length=1)


class CancelCommand(_Command):
    pass


COMMANDS: dict[str, type[_Command]] = {
    "takeoff": TakeoffCommand,
    "location": LocationCommand,
    "mission": MissionCommand,
    "landing": LandingCommand,
    "offboard": OffboardCommand,
    "shell": ShellCommand,
    "cancel": CancelCommand,
}


class CommandDispatch:
    """Turns host control records into navigator operations and direct link primitives.

    Navigation controls block until the navigator reports an outcome. Failed outcomes and invalid
    payloads raise :class:`CommandRejected`; cancelled outcomes are returned.
    """

    def __init__(
        self,
        navigator: WaypointNavigator,
        missions: Sequence[Mission] = (),
        command_timeout_s: float = 10.0,
    ) -> None:
        self.navigator = navigator
        self.missions = tuple(missions)
        self.command_timeout_s = float(command_timeout_s)

    def decode(self, control: str, payload: Optional[dict[str, Any]] = None) -> _Command:
        model = COMMANDS.get(control)
        if model is None:
            raise CommandRejected(f"unknown control '{control}'")
        try:
            return model.model_validate(payload or {})
        except ValidationError as exc:
            raise CommandRejected(f"invalid {control} payload: {exc}") from exc

    def execute(self, control: str, payload: Optional[dict[str, Any]] = None) -> Optional[NavigationOutcome]:
        command = self.decode(control, payload)
        log.info("Executing %s: %s", control, command)
        handler = getattr(self, f"_exec_{control}")
        return handler(command)

    # ------------------------------------------------------------------
    # Navigation controls
    # ------------------------------------------------------------------
    def _exec_takeoff(self, cmd: TakeoffCommand) -> NavigationOutcome:
        return self._check(self.navigator.takeoff(cmd.altitude_agl_m))

    def _exec_location(self, cmd: LocationCommand) -> NavigationOutcome:
        target = Waypoint(lat=cmd.lat, lon=cmd.lon, alt_agl_m=cmd.alt_agl_m, hover_s=cmd.hover_s)
        return self._check(self.navigator.goto_one(target, cmd.return_to_start))

    def _exec_mission(self, cmd: MissionCommand) -> NavigationOutcome:
        mission = self.select_mission(cmd.mission)
        if cmd.return_to_start is not None and cmd.return_to_start != mission.return_to_start:
            mission = mission.model_copy(update={"return_to_start": cmd.return_to_start})
        return self._check(self.navigator.run_mission(mission))

    def _exec_landing(self, cmd: LandingCommand) -> NavigationOutcome:
        return self._check(self.navigator.land(disarm=cmd.disarm))

    def _exec_cancel(self, cmd: CancelCommand) -> None:
        if not self.navigator.cancel():
            log.info("Nothing to cancel")
        return None

    # ------------------------------------------------------------------
    # Direct primitives
    # ------------------------------------------------------------------
    def _exec_offboard(self, cmd: OffboardCommand) -> None:
        link = self._require_link()
        self._wait("offboard", link.set_body_velocity(cmd.forward_m_s, cmd.right_m_s, cmd.down_m_s, cmd.yaw_rate_deg_s))
        return None

    def _exec_shell(self, cmd: ShellCommand) -> None:
        link = self._require_link()
        self._wait("shell", link.send_shell(cmd.command))
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def select_mission(self, key: Union[int, str]) -> Mission:
        if not self.missions:
            raise CommandRejected("no missions configured")
        if isinstance(key, int):
            if not 1 <= key <= len(self.missions):
                raise CommandRejected(f"mission number {key} out of range 1..{len(self.missions)}")
            return self.missions[key - 1]
        for mission in self.missions:
            if mission.name == key:
                return mission
        if key.isdigit():
            return self.select_mission(int(key))
        raise CommandRejected(f"unknown mission '{key}'")

    def _require_link(self) -> VehicleLink:
        link = self.navigator.link
        if link is None:
            outcome = NavigationOutcome.failed(NavigationError.NOT_INITIALIZED, "Unmanned System not initialized")
            raise CommandRejected(str(outcome), outcome)
        return link

    def _wait(self, name: str, fut: Future) -> None:
        try:
            fut.result(timeout=self.command_timeout_s)
        except FutureTimeout as exc:
            fut.cancel()
            raise CommandRejected(f"{name}: no completion within {self.command_timeout_s:.0f} s") from exc
        except LinkCommandError as exc:
            raise CommandRejected(str(exc)) from exc

    @staticmethod
    def _check(outcome: NavigationOutcome) -> NavigationOutcome:
        if outcome.status is OutcomeStatus.FAILED:
            raise CommandRejected(str(outcome), outcome)
        if outcome.status is OutcomeStatus.CANCELLED:
            log.info("Operation cancelled")
        return outcome


__all__ = [
    "CommandDispatch",
    "CommandRejected",
    "COMMANDS",
    "TakeoffCommand",
    "LocationCommand",
    "MissionCommand",
    "LandingCommand",
    "OffboardCommand",
    "ShellCommand",
    "CancelCommand",
]
