"""Non-interactive execution of an interactive CLI agent.

Why not just ``subprocess.run(..., timeout=...)``?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The agent is built for a terminal.  It streams JSON-line events without a
length bound, may keep running (or wait for input) after it has printed its
final ``result`` event, and occasionally writes truncated, concatenated or
double-encoded lines.  Waiting for the process to exit is therefore not a
completion signal, and the full stdout is not always valid NDJSON.

The package splits the problem into:

- ``stream_parser`` -- pure raw-output -> ``ResultRecord`` transform with
  ordered fallbacks and diagnostics on failure.
- ``backend.cli_backend`` -- spawns the agent, watches stdout for the
  completion marker, enforces timeouts and owns the single cleanup path.
- ``lifecycle`` -- registry of in-flight processes, stale/orphan sweeps and
  emergency shutdown.
- ``session_store`` -- per-project (project, model) -> agent session id map
  that heals itself by dropping sessions the agent refuses to resume.
- ``service`` -- the ``generate`` contract tying it all together.
"""
