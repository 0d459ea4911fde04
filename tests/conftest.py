from types import SimpleNamespace

import pytest

from cinegenie.events import AssetEvents
from cinegenie.maintainer import ConsistencyMaintainer
from cinegenie.models import Act, Scene, ScriptDocument
from cinegenie.session import ScriptSession
from cinegenie.store import Database


def make_script(title: str = "Noir", acts: int = 1, scenes: int = 1) -> ScriptDocument:
    return ScriptDocument(
        title=title,
        logline="A detective chases a rogue AI.",
        genre=["Noir", "Sci-Fi"],
        acts=[
            Act(
                act_number=a,
                summary=f"Act {a}",
                scenes=[
                    Scene(
                        scene_number=s,
                        location="Alley",
                        time="Night",
                        action=f"Scene {a}.{s} action",
                        visual_style="High contrast",
                        audio_style="Rain",
                    )
                    for s in range(1, scenes + 1)
                ],
            )
            for a in range(1, acts + 1)
        ],
    )


@pytest.fixture
def studio(tmp_path):
    db = Database(tmp_path / "data")
    events = AssetEvents()
    session = ScriptSession(db)
    notifications = []
    events.subscribe(lambda: notifications.append(True))
    return SimpleNamespace(
        db=db,
        events=events,
        session=session,
        maintainer=ConsistencyMaintainer(session, db, events),
        notifications=notifications,
    )
