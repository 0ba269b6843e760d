import sys
import typer
from pathlib import Path
from typing import Optional
from mnemos.config import settings
from mnemos.logging import logger, get_request_id

app = typer.Typer(no_args_is_help=True)

@app.callback()
def main():
    """
    Mnemos semantic memory CLI.
    """
    pass

def _engine():
    from mnemos.service import MemoryEngine
    from mnemos.exceptions import ConfigurationError
    try:
        return MemoryEngine()
    except ConfigurationError as e:
        print(f"❌ {e.message}")
        raise typer.Exit(code=1)

@app.command(name="doctor")
def doctor():
    """
    Check system configuration and environment health.
    """
    logger.info("Running doctor check...")

    print("\n🩺 Mnemos Doctor\n")

    # Check 1: Environment / Interpreter
    print(f"Python: {sys.version.split()[0]}")
    print(f"Prefix: {sys.prefix}")
    print(f"Request ID: {get_request_id()}")

    # Check 2: Configuration
    print("\n[Configuration]")
    print(f"OPENAI_MODEL_STRUCTURED:  {settings.OPENAI_MODEL_STRUCTURED}")
    print(f"OPENAI_EMBEDDING_MODEL:   {settings.OPENAI_EMBEDDING_MODEL}")
    print(f"DATABASE_URL:             {settings.DATABASE_URL}")
    print(f"TOKEN_COUNTER:            {settings.TOKEN_COUNTER}")
    print(f"CONTEXT_PRECEDENCE:       {settings.CONTEXT_PRECEDENCE}")

    # Mask API Key
    api_key_status = "✅ Set" if settings.OPENAI_API_KEY and settings.OPENAI_API_KEY.get_secret_value() else "❌ Missing"
    print(f"OPENAI_API_KEY:           {api_key_status}")

    # Check 3: Data Directory
    data_dir = Path("data")
    if data_dir.exists() and data_dir.is_dir():
        print(f"\n[Data Directory]          ✅ Found: {data_dir.absolute()}")
    else:
        print(f"\n[Data Directory]          ❌ Missing: {data_dir.absolute()} (Created on db init)")

    print("\nDoctor check complete.")


db_app = typer.Typer(help="Database management commands.")
app.add_typer(db_app, name="db")

@db_app.command("init")
def init():
    """Initialize the database tables."""
    from mnemos.db import init_db
    try:
        init_db()
        logger.info("Database initialized successfully.")
        print("✅ Database initialized.")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        print(f"❌ Failed: {e}")
        raise typer.Exit(code=1)

@db_app.command("cleanup")
def cleanup():
    """Retire duplicate current facts left by older writes."""
    from sqlmodel import Session
    from mnemos.db import engine, init_db
    from mnemos.memory.supersession import cleanup_duplicate_current_facts
    init_db()
    with Session(engine) as session:
        retired = cleanup_duplicate_current_facts(session)
    print(f"✅ Retired {retired} duplicate current facts.")


memory_app = typer.Typer(help="Store and query memories.")
app.add_typer(memory_app, name="memory")

@memory_app.command("remember")
def remember(owner: str, text: str, category: Optional[str] = typer.Option(None, help="Category override")):
    """Store an utterance for OWNER."""
    engine = _engine()
    try:
        result = engine.record_utterance(owner, text, {"category": category})
    finally:
        engine.close()
    print(f"{result.action.value}: memory {result.memory_id}")
    if result.fingerprint:
        print(f"fingerprint: {result.fingerprint} (superseded {result.superseded_count})")
    if result.reason:
        print(f"reason: {result.reason}")

@memory_app.command("recall")
def recall(
    owner: str,
    query: str,
    budget: Optional[int] = typer.Option(None, help="Memory token budget"),
    explain: bool = typer.Option(False, "--explain", help="Show scoring for each memory"),
):
    """Show the memory context OWNER's QUERY would receive."""
    engine = _engine()
    try:
        bundle = engine.query(owner, query, token_budget=budget)
    finally:
        engine.close()
    if not bundle.memory_candidates:
        print("No memories found.")
        return
    print(bundle.section("memory").text)
    if explain:
        print()
        for c in bundle.memory_candidates:
            print(f"[ID {c.memory_id}] {c.explanation}")
    print(f"\n{bundle.total_tokens} tokens")

@memory_app.command("list")
def list_memories(
    owner: str,
    limit: int = typer.Option(100, help="Maximum memories to show"),
    all_: bool = typer.Option(False, "--all", help="Include superseded memories"),
):
    """List OWNER's memories with sensitive numbers masked."""
    engine = _engine()
    try:
        memories = engine.list_memories(owner, limit=limit, include_superseded=all_)
    finally:
        engine.close()
    if not memories:
        print("No memories found.")
        return
    for m in memories:
        marker = "" if m.is_current else " (superseded)"
        content = m.content.replace("\n", " ")
        print(f"[ID {m.id}] {m.created_at:%Y-%m-%d %H:%M} {m.category_name} {m.importance:.2f}{marker}: {content}")

@memory_app.command("history")
def history(owner: str, memory_id: int):
    """Show the supersession chain containing MEMORY_ID."""
    engine = _engine()
    try:
        chain = engine.history(owner, memory_id)
    finally:
        engine.close()
    if not chain:
        print("No memory found.")
        raise typer.Exit(code=1)
    for i, m in enumerate(chain, 1):
        state = "current" if m.is_current else "superseded"
        print(f"{i}. [ID {m.id}] {state} {m.created_at:%Y-%m-%d %H:%M:%S}: {m.content}")

@memory_app.command("stats")
def stats(owner: str):
    """Memory counts for OWNER."""
    engine = _engine()
    try:
        result = engine.stats(owner)
    finally:
        engine.close()
    print(f"Total:      {result['total']}")
    print(f"Current:    {result['current']}")
    print(f"Superseded: {result['superseded']}")
    for status, count in sorted(result["embedding_status"].items()):
        print(f"Embeddings {status}: {count}")
    for category, count in sorted(result["categories"].items()):
        print(f"  {category}: {count}")


embeddings_app = typer.Typer(help="Embedding maintenance commands.")
app.add_typer(embeddings_app, name="embeddings")

@embeddings_app.command("backfill")
def backfill(
    limit: int = typer.Option(100, help="Maximum rows to embed"),
    max_seconds: float = typer.Option(60.0, help="Time budget in seconds"),
):
    """Embed memories left pending or failed."""
    engine = _engine()
    if engine.embeddings is None:
        print("❌ No embedding provider configured (set OPENAI_API_KEY).")
        raise typer.Exit(code=1)
    try:
        counts = engine.embeddings.backfill(limit=limit, max_seconds=max_seconds)
    finally:
        engine.close()
    print(f"✅ Backfill: {counts}")

if __name__ == "__main__":
    app()
