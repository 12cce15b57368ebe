from pathlib import Path
import asyncio
import json
import logging
import sys

# Allow running this file directly (`python path/to/run_example.py`) by adding project root.
if __package__ is None or __package__ == '':
    ROOT = Path(__file__).resolve().parent.parent
    if str(ROOT) not in sys.path:
        sys.path.insert(0, str(ROOT))

from pilot_platform.agent_runner import OpenAIChatModel
from pilot_platform.config import load_settings
from pilot_platform.run_flow import PilotEngine
from pilot_platform.session_state import PilotSessionRecord


async def main(question: str) -> None:
    settings = load_settings()
    model = OpenAIChatModel(settings=settings)
    session = PilotSessionRecord(
        session_id='demo',
        title='Pilot demo',
        input={'query': question},
        max_epoch=settings.max_epoch,
    )

    for epoch in range(settings.max_epoch + 1):
        session.current_epoch = epoch
        result = await PilotEngine(model, session, settings=settings).run()
        session.progress = result.plan.to_json()

        print(f"\n== Epoch {epoch} (overall {result.plan.overall_progress}%) ==")
        for step in result.steps:
            print(json.dumps(step.to_dict(), ensure_ascii=False))
        if not result.steps:
            print('(no steps)')

    print('\nFinal plan:')
    print(result.plan.to_brief_text())


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s %(message)s')
    topic = ' '.join(sys.argv[1:]) or 'Research the EV market and write a report'
    asyncio.run(main(topic))
