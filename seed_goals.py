"""
Seed demo goals for one gym (voting, fundraising, completed).
Run:  python seed_goals.py [gym_id]
"""
import sys
from datetime import timedelta

# ── bootstrap ────────────────────────────────────────────────────
from gymgoals.infrastructure.db.session import get_session_factory
from gymgoals.infrastructure.db.models import GoalModel
from gymgoals.application.goals import CreateGoalUseCase, PublishGoalUseCase, GoalOptionInput
from gymgoals.application.goal_voting import CastVoteUseCase, GoalVotesQuery
from gymgoals.application.goal_contributions import AddContributionUseCase
from gymgoals.domain.goal import utcnow
from gymgoals.utils.money import euros_to_cents, format_amount

GYM_ID = sys.argv[1] if len(sys.argv) > 1 else "demo-gym"

factory = get_session_factory()

with factory() as db:
    existing = db.query(GoalModel).filter_by(gym_id=GYM_ID).count()
if existing > 0:
    print(f"Gym {GYM_ID} already has {existing} goals, nothing to do")
    sys.exit(0)

now = utcnow()

# ═══════════════════════════════════════════════════════════════
# Voting: three options, a week to decide
# ═══════════════════════════════════════════════════════════════
with factory() as db:
    voting_id = CreateGoalUseCase(db).execute(
        gym_id=GYM_ID,
        name="Next big purchase",
        description="Pick what we buy next",
        options=[
            GoalOptionInput(name="Rowing machine", target_amount=euros_to_cents("1500")),
            GoalOptionInput(name="Infrared sauna", target_amount=euros_to_cents("4000")),
            GoalOptionInput(name="New kettlebell set", target_amount=euros_to_cents("650")),
        ],
        voting_ends_at=now + timedelta(days=7),
    )
    PublishGoalUseCase(db).execute(voting_id, GYM_ID)

breakdown = GoalVotesQuery(factory).get_vote_breakdown(voting_id)
option_ids = [o.id for o in breakdown.options]
cast_vote = CastVoteUseCase(factory)
for i in range(12):
    result = cast_vote.execute(voting_id, f"member-{i}", option_ids[i % 3 if i % 4 else 1])
    if not result.success:
        print(f"  vote of member-{i} failed: {result.error}")

print(f"Voting goal {voting_id}:")
for option in GoalVotesQuery(factory).get_vote_breakdown(voting_id).options:
    print(f"  {option.name}: {option.vote_count} votes ({option.percentage}%)")

# ═══════════════════════════════════════════════════════════════
# Fundraising: single option, straight to fundraising
# ═══════════════════════════════════════════════════════════════
with factory() as db:
    fundraising_id = CreateGoalUseCase(db).execute(
        gym_id=GYM_ID,
        name="New flooring",
        options=[GoalOptionInput(name="Rubber floor tiles", target_amount=euros_to_cents("2400"))],
    )
    PublishGoalUseCase(db).execute(fundraising_id, GYM_ID)

add_contribution = AddContributionUseCase(factory)
for i, euros in enumerate(("25", "25", "40", "120.50")):
    add_contribution.execute(
        fundraising_id, euros_to_cents(euros), "subscription",
        member_id=f"member-{i}", member_name=f"Member {i}",
    )
result = add_contribution.execute(fundraising_id, euros_to_cents("300"), "manual", note="Charity evening")
print(f"Fundraising goal {fundraising_id}: {format_amount(result.current_amount)} collected")

# ═══════════════════════════════════════════════════════════════
# Completed: fully funded
# ═══════════════════════════════════════════════════════════════
with factory() as db:
    completed_id = CreateGoalUseCase(db).execute(
        gym_id=GYM_ID,
        name="Yoga mats",
        options=[GoalOptionInput(name="20 yoga mats", target_amount=euros_to_cents("480"))],
    )
    PublishGoalUseCase(db).execute(completed_id, GYM_ID)

result = add_contribution.execute(completed_id, euros_to_cents("480"), "manual", note="Sponsor")
print(f"Completed goal {completed_id}: completed={result.completed}")
