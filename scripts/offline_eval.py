import argparse
import json
import math

from rpslab import EngineContext, GameBrain, configure_logging
from rpslab.analyzer import analyze
from rpslab.storage import MemoryRepository


def log_loss(p, y):
    return -math.log(max(1e-8, p[y]))


def run_offline(data_path: str, difficulty: str = "normal", seed: int = 42):
    """Replay recorded sessions through a fresh in-memory engine.

    data format: list of {profile_id, moves: ["rock", "paper", ...] or [0, 1, ...]}
    """
    with open(data_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    with EngineContext(repository=MemoryRepository()) as ctx:
        brain = GameBrain(ctx, random_seed=seed)
        rounds = []
        losses = []
        for sess in data:
            pid = sess.get("profile_id") or sess.get("user_id") or "anon"
            for move in sess.get("moves", []):
                _, meta = brain.predict(pid, difficulty)
                log = brain.feedback(pid, move)
                d = meta["dist"]
                losses.append(log_loss([d["rock"], d["paper"], d["scissors"]], log.player))
                rounds.append(log)

    report = analyze(rounds)
    report["logLoss"] = sum(losses) / len(losses) if losses else None
    print(json.dumps(report, indent=2))
    return report


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay recorded sessions and print calibration metrics")
    parser.add_argument("data_path")
    parser.add_argument("--difficulty", default="normal", choices=["fair", "normal", "ruthless"])
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--log-level", default="WARNING")
    args = parser.parse_args()
    configure_logging(args.log_level)
    run_offline(args.data_path, args.difficulty, args.seed)
