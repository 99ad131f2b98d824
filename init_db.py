#!/usr/bin/env python3
"""
Create the relay sheet schema in PostgreSQL and seed the fixed course:
12 runners, 36 legs, one empty leg_inputs row per leg and the config row.
Safe to re-run; existing rows are left alone.
"""
import os
import psycopg2


LEG_COUNT = 36
RUNNER_COUNT = 12


def create_tables(conn):
    """Create the database schema"""
    with conn.cursor() as cur:
        cur.execute("""
            CREATE TABLE IF NOT EXISTS app_config (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                race_start_time TIMESTAMPTZ,
                finish_time TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS runners (
                runner_number INTEGER PRIMARY KEY CHECK (runner_number BETWEEN 1 AND 12),
                name VARCHAR(100),
                default_estimated_pace_spm DOUBLE PRECISION,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS legs (
                leg INTEGER PRIMARY KEY CHECK (leg BETWEEN 1 AND 36),
                runner_number INTEGER NOT NULL REFERENCES runners(runner_number),
                leg_mileage NUMERIC(6, 2) NOT NULL DEFAULT 0 CHECK (leg_mileage >= 0),
                elev_gain_ft INTEGER NOT NULL DEFAULT 0,
                elev_loss_ft INTEGER NOT NULL DEFAULT 0,
                net_elev_diff_ft INTEGER NOT NULL DEFAULT 0,
                exchange_label VARCHAR(200) NOT NULL DEFAULT '',
                exchange_url VARCHAR(500) NOT NULL DEFAULT '',
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        cur.execute("""
            CREATE TABLE IF NOT EXISTS leg_inputs (
                leg INTEGER PRIMARY KEY REFERENCES legs(leg) ON DELETE CASCADE,
                estimated_pace_override_spm DOUBLE PRECISION,
                actual_start_time TIMESTAMPTZ,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
        """)

        conn.commit()
        print("Database schema created successfully")


def seed(conn):
    """Insert the singleton config, runners 1..12 and legs 1..36."""
    with conn.cursor() as cur:
        cur.execute("INSERT INTO app_config (id) VALUES (1) ON CONFLICT (id) DO NOTHING")

        for runner in range(1, RUNNER_COUNT + 1):
            # Only fill in a name where none has been set yet
            cur.execute("""
                INSERT INTO runners (runner_number, name, default_estimated_pace_spm)
                VALUES (%s, %s, NULL)
                ON CONFLICT (runner_number) DO UPDATE SET
                    name = EXCLUDED.name,
                    updated_at = now()
                WHERE runners.name IS NULL OR runners.name = ''
            """, (runner, f"Runner {runner}"))

        for leg in range(1, LEG_COUNT + 1):
            runner = (leg - 1) % RUNNER_COUNT + 1
            cur.execute("""
                INSERT INTO legs (
                    leg, runner_number, leg_mileage, elev_gain_ft, elev_loss_ft,
                    net_elev_diff_ft, exchange_label, exchange_url
                ) VALUES (%s, %s, 5.00, 0, 0, 0, %s, %s)
                ON CONFLICT (leg) DO NOTHING
            """, (leg, runner, f"Exchange {leg}", "https://maps.google.com"))
            cur.execute(
                "INSERT INTO leg_inputs (leg) VALUES (%s) ON CONFLICT (leg) DO NOTHING",
                (leg,),
            )

        conn.commit()
        print(f"Seeded {RUNNER_COUNT} runners and {LEG_COUNT} legs")


def main():
    url = os.environ.get("DATABASE_URL")
    if not url:
        print("Error: DATABASE_URL environment variable not set")
        return 1

    conn = None
    try:
        conn = psycopg2.connect(url)
        print("Connected to PostgreSQL database")

        create_tables(conn)
        seed(conn)

        with conn.cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM legs")
            leg_count = cur.fetchone()[0]
            cur.execute("SELECT COUNT(*) FROM runners")
            runner_count = cur.fetchone()[0]
        print(f"\nSummary:")
        print(f"- {runner_count} runners")
        print(f"- {leg_count} legs")
        return 0
    except psycopg2.Error as e:
        print(f"Error during setup: {e}")
        return 1
    finally:
        if conn is not None:
            conn.close()


if __name__ == "__main__":
    raise SystemExit(main())
