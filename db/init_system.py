"""
Initialization script for the match engine: sets up the database schema,
rebuilds all matches, recomputes a single project and reports system status.
"""

import sys
import os
from pathlib import Path
import argparse
import logging
import time

# Add project root to path for proper package imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from matchengine.database import MatchEngineService, DatabaseConfig
from matchengine.incremental import update_project_matches
from matchengine.models import RebuildInProgressError
from matchengine.rebuild import rebuild_matches

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def setup_database(service: MatchEngineService, schema_path: str = None):
    """Setup database schema."""
    logger.info("Setting up database schema...")

    if schema_path is None:
        schema_path = Path(__file__).parent / "create_table.sql"

    if not os.path.exists(schema_path):
        logger.error(f"Schema file not found: {schema_path}")
        return False

    try:
        service.setup_database(str(schema_path))
        logger.info("Database setup completed successfully")
        return True
    except Exception as e:
        logger.error(f"Database setup failed: {e}")
        return False

def run_rebuild(service: MatchEngineService):
    """Rebuild all matches from image embeddings."""
    logger.info("Rebuilding all matches...")

    try:
        result = rebuild_matches(service)
    except RebuildInProgressError as e:
        logger.error(f"Rebuild skipped: {e}")
        return False
    except Exception as e:
        logger.error(f"Rebuild failed: {e}")
        return False

    logger.info(f"Run {result.run_id}:")
    logger.info(f"  - Projects: {result.projects_count}")
    logger.info(f"  - Products: {result.products_count}")
    logger.info(f"  - Matches upserted: {result.matches_upserted}")
    logger.info(f"  - Stale matches deleted: {result.matches_deleted_stale}")
    for error in result.errors:
        logger.warning(f"  - Error: {error}")
    return True

def run_project_update(service: MatchEngineService, project_id: str):
    """Recompute matches for one project."""
    logger.info(f"Recomputing matches for project {project_id}...")

    try:
        result = update_project_matches(service, project_id)
    except RebuildInProgressError as e:
        logger.error(f"Project update skipped: {e}")
        return False
    except Exception as e:
        logger.error(f"Project update failed: {e}")
        return False

    logger.info(f"Upserted {result.upserted_count} matches for project {project_id}")
    for error in result.errors:
        logger.warning(f"  - Error: {error}")
    return True

def run_system_check(service: MatchEngineService):
    """Run system health check."""
    logger.info("Running system health check...")

    try:
        embeddings = service.embedding_manager.get_all_embeddings()
        projects = service.catalog_manager.get_valid_project_ids()
        products = service.catalog_manager.get_valid_product_ids()
        matches = service.match_manager.get_all_matches()
        queued = service.queue_manager.get_queued_projects()

        logger.info(f"Database Status:")
        logger.info(f"  - Image embeddings: {len(embeddings)}")
        logger.info(f"  - Catalog projects: {len(projects)}")
        logger.info(f"  - Catalog products: {len(products)}")
        logger.info(f"  - Matches: {len(matches)}")
        logger.info(f"  - Queued project recomputes: {len(queued)}")

        latest = service.run_log_manager.get_latest_run()
        if latest:
            logger.info(f"Latest Run:")
            logger.info(f"  - Run ID: {latest['run_id']}")
            logger.info(f"  - Status: {latest['status']}")
            logger.info(f"  - Matches upserted: {latest['matches_upserted']}")
            if latest.get('error_message'):
                logger.warning(f"  - Errors: {latest['error_message']}")
        else:
            logger.warning("No rebuild runs recorded")

        logger.info("System health check completed successfully")
        return True

    except Exception as e:
        logger.error(f"System health check failed: {e}")
        return False

def main():
    parser = argparse.ArgumentParser(description="Initialize and maintain the Match Engine")
    parser.add_argument("--setup-db", action="store_true", help="Setup database schema")
    parser.add_argument("--rebuild", action="store_true", help="Rebuild all matches")
    parser.add_argument("--project", help="Recompute matches for a single project id")
    parser.add_argument("--all", action="store_true", help="Setup schema and rebuild matches")
    parser.add_argument("--check", action="store_true", help="Run system health check")
    parser.add_argument("--schema-path", help="Path to database schema file")

    args = parser.parse_args()

    # If no specific actions, show help
    if not any([args.setup_db, args.rebuild, args.project, args.all, args.check]):
        parser.print_help()
        return

    logger.info("=== Match Engine Initialization ===")

    # Initialize services
    try:
        db_config = DatabaseConfig()  # Uses defaults from config
        service = MatchEngineService(db_config)
        logger.info(f"Database: {db_config.dbname}@{db_config.host}:{db_config.port}")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        return

    start_time = time.time()
    success_count = 0
    total_steps = 0

    # Run initialization steps
    if args.all or args.setup_db:
        total_steps += 1
        logger.info("\n--- Step: Setup Database ---")
        if setup_database(service, args.schema_path):
            success_count += 1

    if args.all or args.rebuild:
        total_steps += 1
        logger.info("\n--- Step: Rebuild Matches ---")
        if run_rebuild(service):
            success_count += 1

    if args.project:
        total_steps += 1
        logger.info("\n--- Step: Recompute Project ---")
        if run_project_update(service, args.project):
            success_count += 1

    if args.check:
        logger.info("\n--- System Health Check ---")
        run_system_check(service)

    # Summary
    elapsed_time = time.time() - start_time
    logger.info(f"\n=== Initialization Complete ===")
    logger.info(f"Completed {success_count}/{total_steps} steps successfully")
    logger.info(f"Total time: {elapsed_time:.2f} seconds")

    if success_count == total_steps and total_steps > 0:
        logger.info("All steps completed successfully.")
        logger.info("Start the API server with: python app.py")
    elif total_steps > 0:
        logger.warning("Some steps failed. Check the logs above.")
        sys.exit(1)

if __name__ == "__main__":
    main()
