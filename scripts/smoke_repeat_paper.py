from rpslab import EngineContext, GameBrain, configure_logging
from rpslab.utils import move_name

# Simple smoke test: user always plays Paper (1)
configure_logging("WARNING")
with EngineContext() as ctx:
    brain = GameBrain(ctx, random_seed=7)
    uid = "smoke_paper"

    counts = {"win": 0, "lose": 0, "tie": 0}
    for t in range(30):
        ai_move, meta = brain.predict(uid, "ruthless")
        # outcome is from the player's side: "lose" means the AI won
        log = brain.feedback(uid, 1, ai_move=ai_move)
        counts[log.outcome] += 1
        print(
            f"round={t+1} ai_move={move_name(ai_move)} outcome={log.outcome} "
            f"policy={meta['policy']} confidence={meta['confidence']:.2f}"
        )

    report = brain.insights(uid)
    print(f"Summary: ai_wins={counts['lose']} ties={counts['tie']} ai_losses={counts['win']}")
    print(f"ECE={report['ece']} brier={report['brier']['mean']}")
