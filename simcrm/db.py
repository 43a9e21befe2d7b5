import aiosqlite


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS jobs(
                    job_id TEXT PRIMARY KEY,
                    simulation_id TEXT,
                    user_id TEXT,
                    outcome TEXT,
                    theme TEXT,
                    industry TEXT,
                    frequency TEXT,
                    sequence INTEGER,
                    template_id TEXT,
                    scaling_factor REAL,
                    base_cycle_days REAL,
                    target_cycle_days REAL,
                    job_start_at TEXT,
                    status TEXT,
                    metadata_json TEXT,
                    context_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS job_steps(
                    step_id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    step_index INTEGER,
                    template_day REAL,
                    scaled_day REAL,
                    scheduled_at TEXT,
                    action_type TEXT,
                    record_type TEXT,
                    record_id_template TEXT,
                    associations_template_json TEXT,
                    source_label TEXT,
                    action_template_json TEXT,
                    reason_template TEXT,
                    status TEXT,
                    result_json TEXT,
                    attempt INTEGER DEFAULT 0,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_job_steps_due ON job_steps(status, scheduled_at);
                CREATE INDEX IF NOT EXISTS idx_job_steps_job ON job_steps(job_id, step_index);
                CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status);
                """
            )
            await db.commit()
