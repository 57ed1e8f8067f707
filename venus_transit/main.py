from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from contextlib import asynccontextmanager, suppress
from typing import Optional
import asyncio
import logging
import math
import time

from .errors import InvalidInputError
from .logging_config import setup_logging
from .navigator import TimeSteppingNavigator
from .orbit_engine import OrbitEngine
from .time_controller import TimeController
from .transit_calculator import TransitCalculator

logger = logging.getLogger(__name__)

FRAME_INTERVAL = 0.05  # seconds, 20 FPS
DEFAULT_PORT = 8712


class Simulation:
    """Everything one running service owns: the model, the clock, the navigator and the open sockets."""

    def __init__(self, clock=time.monotonic, sleep=asyncio.sleep):
        self.engine = OrbitEngine()
        self.calculator = TransitCalculator(self.engine)
        self.controller = TimeController(clock=clock)
        self.navigator = TimeSteppingNavigator(self.controller, self.calculator, sleep=sleep)

        self.connections: list[WebSocket] = []
        self.demo_task: Optional[asyncio.Task] = None
        self._orbit_points_cache: dict[tuple[str, int], dict] = {}
        self._dirty = False

        self.controller.add_time_listener(self._on_time_changed)
        self.controller.add_play_state_listener(self._mark_dirty)
        self.controller.add_speed_listener(self._mark_dirty)

    def _on_time_changed(self, change) -> None:
        self.calculator.check_transit_status(change.time)
        self._dirty = True

    def _mark_dirty(self, _value) -> None:
        self._dirty = True

    # -- payloads ----------------------------------------------------------

    def orbit_points(self, body: str, num_points: int) -> dict:
        key = (body, int(num_points))
        cached = self._orbit_points_cache.get(key)
        if cached is not None:
            return cached

        points = self.engine.generate_orbit_points(body, num_points)
        payload = {"body": body, "points": [list(p) for p in points]}
        if num_points == 360:
            self._orbit_points_cache[key] = payload
        return payload

    def bodies(self) -> dict:
        result = {}
        for name, body in self.engine.bodies.items():
            info = {
                "radius_km": body.radius_km,
                "rotation_period_days": body.rotation_period_days,
                "retrograde": body.retrograde_rotation,
                "fixed": body.fixed,
            }
            if body.elements is not None:
                info.update(
                    a=body.elements.semi_major_axis,
                    e=body.elements.eccentricity,
                    i=math.degrees(body.elements.inclination),
                    period=body.elements.period,
                )
            result[name] = info
        return result

    def bodies_snapshot(self, jd: float) -> dict:
        return {
            name: {
                "position": list(self.engine.get_body_position(name, jd)),
                "rotation": body.rotation_angle(jd),
            }
            for name, body in self.engine.bodies.items()
        }

    def state(self) -> dict:
        c = self.controller
        return {
            "is_playing": c.is_playing,
            "speed": c.speed,
            "min_speed": c.min_speed,
            "max_speed": c.max_speed,
            "current_time": c.current_time.isoformat(),
            "start_time": c.start_time.isoformat(),
            "end_time": c.end_time.isoformat(),
            "time_mode": self.navigator.mode.value,
            "demo_running": self.navigator.demo_running,
            "current_demo": self.navigator.current_demo,
        }

    def build_update(self, message_type: str = "update") -> dict:
        c = self.controller
        jd = c.julian_date
        status = self.calculator.get_transit_status(c.current_time)
        condition = self.engine.transit_condition(jd)
        transit = status.to_dict()
        transit["geometry"] = {
            "isTransiting": condition.is_transiting,
            "angularSeparation": condition.angular_separation,
            "sunAngularRadius": condition.sun_angular_radius,
            "venusAngularRadius": condition.venus_angular_radius,
            "depth": condition.depth,
        }
        return {
            "type": message_type,
            "time": c.current_time.isoformat(),
            "julianDate": jd,
            "formattedTime": c.formatted_time,
            "progressPercent": c.progress,
            "transit": transit,
            "bodies": self.bodies_snapshot(jd),
            "simulation": self.state(),
        }

    # -- sockets -----------------------------------------------------------

    async def broadcast(self, message: dict) -> None:
        """Send message to all connected clients, dropping the ones that fail."""

        async def _send_one(connection: WebSocket):
            try:
                await asyncio.wait_for(connection.send_json(message), timeout=0.5)
                return None
            except Exception as e:
                logger.debug("Dropping websocket client: %r", e)
                return connection

        connections = list(self.connections)
        if not connections:
            return

        results = await asyncio.gather(*(_send_one(connection) for connection in connections))
        for dead in results:
            if dead is not None and dead in self.connections:
                self.connections.remove(dead)

    async def flush(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        await self.broadcast(self.build_update("update"))

    # -- demos -------------------------------------------------------------

    def start_demo(self, name: str) -> None:
        if name not in self.navigator.demo_sequences:
            raise InvalidInputError(f"Unknown demo sequence: {name!r}")
        self.stop_demo()
        self.demo_task = asyncio.create_task(self.navigator.run_demo_sequence(name))
        self.demo_task.add_done_callback(self._demo_finished)

    def stop_demo(self) -> None:
        """Ask the running demo to stop; it finishes its current wait and then returns."""
        self.navigator.stop_demo_sequence()

    @staticmethod
    def _demo_finished(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Demo sequence failed", exc_info=exc)

    def close(self) -> None:
        self.stop_demo()
        # shutdown does not wait out the current step
        if self.demo_task is not None and not self.demo_task.done():
            self.demo_task.cancel()
        self.demo_task = None
        self.navigator.close()
        self.controller.close()


async def simulation_loop(sim: Simulation):
    """Advance the clock once per frame and push changes to the clients."""
    try:
        while True:
            sim.controller.tick()
            await sim.flush()
            await asyncio.sleep(FRAME_INTERVAL)
    except asyncio.CancelledError:
        return


@asynccontextmanager
async def lifespan(app: FastAPI):
    sim: Simulation = app.state.simulation
    simulation_task = asyncio.create_task(simulation_loop(sim))
    logger.info("Simulation loop started (window %s to %s)", sim.controller.start_time, sim.controller.end_time)
    try:
        yield
    finally:
        simulation_task.cancel()
        with suppress(asyncio.CancelledError):
            await simulation_task
        sim.close()


async def handle_command(sim: Simulation, websocket: WebSocket, command, data: dict) -> bool:
    """
    Apply one client command. Returns False for an unknown command.

    Invalid arguments raise InvalidInputError (or ValueError) to the caller.
    """
    controller = sim.controller

    if command == "play":
        controller.set_play_state(True)
    elif command == "pause":
        controller.set_play_state(False)
    elif command == "toggle":
        controller.toggle_play_state()
    elif command == "set_speed":
        raw_speed = data.get("speed")
        try:
            speed = float(raw_speed)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid speed: {raw_speed!r}") from e
        controller.set_speed(speed)
    elif command == "set_time":
        controller.jump_to_time(data.get("time"))
    elif command == "set_window":
        raw_year = data.get("year")
        try:
            year = int(raw_year)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid year: {raw_year!r}") from e
        controller.use_transit_window(year)
    elif command == "jump_preset":
        controller.jump_to_preset(data.get("name"))
    elif command == "step":
        raw_direction = data.get("direction", 1)
        try:
            direction = int(raw_direction)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid direction: {raw_direction!r}") from e
        sim.navigator.step_time(direction, data.get("step_type", "normal"))
    elif command == "set_mode":
        sim.navigator.set_time_mode(data.get("mode"))
    elif command == "demo_start":
        sim.start_demo(data.get("name"))
    elif command == "demo_stop":
        sim.stop_demo()
    elif command == "get_snapshot":
        await websocket.send_json({"type": "snapshot", "data": sim.build_update("snapshot")})
    else:
        return False

    await sim.flush()
    return True


def _observation_to_dict(entry: dict) -> dict:
    data = entry["point"].to_dict()
    data.update(
        observerPosition=list(entry["observer_position"]),
        parallaxData={name: sample.to_dict() for name, sample in entry["parallax_data"].items()},
        calculatedDistance=entry["calculated_distance"],
        localContactTimes={name: t.isoformat() for name, t in entry["local_contact_times"].items()},
    )
    return data


def create_app(simulation: Optional[Simulation] = None) -> FastAPI:
    app = FastAPI(title="Venus Transit Simulation", lifespan=lifespan)
    app.state.simulation = sim = simulation if simulation is not None else Simulation()

    @app.get("/api/state")
    async def get_simulation_state():
        """Get current simulation state"""
        return sim.state()

    @app.get("/api/bodies")
    async def get_bodies():
        return sim.bodies()

    @app.get("/api/orbit/{body}")
    async def get_orbit_points(body: str, num_points: int = 360):
        """Get orbit points for a body"""
        if body not in sim.engine.bodies:
            return {"error": "Invalid body"}

        if num_points < 4 or num_points > 5000:
            return {"error": "Invalid num_points (expected 4..5000)"}

        return sim.orbit_points(body, num_points)

    @app.get("/api/snapshot")
    async def get_snapshot():
        return sim.build_update("snapshot")

    @app.get("/api/presets")
    async def get_presets():
        return [{"name": p.name, "time": p.time.isoformat(), "kind": p.kind} for p in sim.controller.presets]

    @app.get("/api/transit/status")
    async def get_transit_status(time: Optional[str] = None):
        t = time if time is not None else sim.controller.current_time
        try:
            return sim.calculator.get_transit_status(t).to_dict()
        except InvalidInputError as e:
            return {"error": str(e)}

    @app.get("/api/transit/{year}")
    async def get_transit_event(year: int):
        event = sim.calculator.get_transit_event(year)
        if event is None:
            return {"error": f"No transit data for {year}"}
        return event.to_dict()

    @app.get("/api/transit/{year}/contacts")
    async def get_contact_times(year: int):
        """Tabulated contacts next to the ones the orbit model predicts."""
        event = sim.calculator.get_transit_event(year)
        if event is None:
            return {"error": f"No transit data for {year}"}

        computed = await asyncio.to_thread(sim.calculator.compute_contact_times, year)
        return {
            "year": year,
            "table": {name: t.isoformat() for name, t in event.contact_times.items()},
            "computed": (
                {name: t.isoformat() if t is not None else None for name, t in computed.items()}
                if computed is not None
                else None
            ),
        }

    @app.get("/api/transit/{year}/au")
    async def get_au_distance(year: int):
        result = sim.calculator.calculate_historical_au_distance(year)
        if result is None:
            return {"error": f"Not enough observations for {year}"}
        return result

    @app.get("/api/observations/{year}")
    async def get_observations(year: int):
        return [_observation_to_dict(entry) for entry in sim.calculator.get_historical_observations(year)]

    @app.get("/api/observations/{year}/best-pair")
    async def get_best_observation_pair(year: int):
        pair = sim.calculator.find_best_observation_pair(year)
        if pair is None:
            return {"error": f"Not enough observations for {year}"}
        return [point.to_dict() for point in pair]

    @app.get("/api/statistics")
    async def get_statistics():
        return sim.calculator.get_statistics()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket endpoint for real-time updates"""
        await websocket.accept()
        sim.connections.append(websocket)

        try:
            initial_data = {
                "type": "init",
                "bodies": sim.bodies(),
                "simulation_state": sim.state(),
                "earth_orbit": sim.orbit_points("earth", 360),
                "venus_orbit": sim.orbit_points("venus", 360),
                "presets": await get_presets(),
                "demos": list(sim.navigator.demo_sequences),
                "current_snapshot": sim.build_update("snapshot"),
            }
            try:
                await websocket.send_json(initial_data)
            except Exception as e:
                logger.warning("Failed to send initial state: %r", e)
                return

            while True:
                try:
                    data = await websocket.receive_json()
                except WebSocketDisconnect:
                    raise
                except Exception:
                    await websocket.send_json({
                        "type": "error",
                        "command": None,
                        "message": "Invalid JSON message",
                    })
                    continue

                command = data.get("command") if isinstance(data, dict) else None
                try:
                    handled = await handle_command(sim, websocket, command, data if isinstance(data, dict) else {})
                except (InvalidInputError, ValueError) as e:
                    logger.debug("Rejected %s: %s", command, e)
                    await websocket.send_json({"type": "error", "command": command, "message": str(e)})
                    continue

                if handled:
                    await websocket.send_json({"type": "ack", "command": command})
                else:
                    await websocket.send_json({
                        "type": "error",
                        "command": command,
                        "message": "Unknown command",
                    })

        except WebSocketDisconnect:
            pass
        finally:
            if websocket in sim.connections:
                sim.connections.remove(websocket)

    return app


app = create_app()


def main():
    import uvicorn
    import sys

    setup_logging()

    port = DEFAULT_PORT
    if len(sys.argv) > 1 and sys.argv[1] == "--port":
        if len(sys.argv) > 2:
            try:
                port = int(sys.argv[2])
            except ValueError:
                logger.warning("Invalid port: %r; using default %d", sys.argv[2], port)
        else:
            logger.warning("Missing port after --port; using default %d", port)

    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
