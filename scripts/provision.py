#!/usr/bin/env python3
"""
Provision the node and its release pipeline, optionally run one execution.
Usage: python scripts/provision.py [--pipeline pipeline.yml] [--run] [--revision SHA]
"""
import argparse
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.orm import Session
from app.db.session import SessionLocal, engine, Base
from app.db import models  # noqa
from app.core.config import settings
from app.core.controller import Controller
from app.core.engine import PipelineEngine
from app.core.logging import configure_logging
from app.core.pipeline_def import load_definition

def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("--pipeline", default=settings.pipeline_file, help="pipeline definition file")
    parser.add_argument("--run", action="store_true", help="trigger one execution and wait for it")
    parser.add_argument("--revision", default=None, help="revision to build (default: branch head)")
    args = parser.parse_args()

    configure_logging()
    Base.metadata.create_all(bind=engine)

    definition = load_definition(args.pipeline)
    db: Session = SessionLocal()
    try:
        outputs = Controller(db).provision(definition)
        printable = outputs.to_dict()
        user_data = printable.pop("user_data")
        print("Stack outputs:")
        print(json.dumps(printable, indent=2))
        print()
        print("Bootstrap script (run on the node at first boot):")
        print(user_data)

        if not args.run:
            return 0

        pipeline_engine = PipelineEngine(db=db)
        pipeline = db.get(models.Pipeline, outputs.pipeline_id)
        execution = pipeline_engine.create_execution(pipeline, revision_id=args.revision)
        print(f"Created execution {execution.id}; waiting on handshake {outputs.handshake_id}...")
        execution = pipeline_engine.start(execution.id)

        print()
        print("=" * 80)
        print(f"Execution {execution.id}: {execution.status.value}")
        for stage in execution.stages:
            line = f"  {stage.name.value:<8} {stage.status.value}"
            if stage.error_message:
                line += f"  ({stage.error_message})"
            print(line)
        if execution.error_message:
            print(f"Error: {execution.error_message}")
        print("=" * 80)
        return 0 if execution.status.value == "SUCCEEDED" else 1
    finally:
        db.close()

if __name__ == "__main__":
    sys.exit(main())
