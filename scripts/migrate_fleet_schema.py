import sys
import os

# Add parent dir to path so we can import app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import app, db
from sqlalchemy import text

# Columns added to devices after the first deployments
DEVICE_COLUMNS = {
    "user_id": "VARCHAR(255)",
    "name": "VARCHAR(255)",
    "mac_address": "VARCHAR(64)",
    "last_reboot": "TIMESTAMP",
    "public_ip": "VARCHAR(64)",
    "public_city": "VARCHAR(255)",
    "public_country": "VARCHAR(255)",
    "public_lat": "DOUBLE PRECISION",
    "public_lng": "DOUBLE PRECISION",
}

def existing_columns(conn, table):
    # Postgres specific query to check columns
    result = conn.execute(
        text("SELECT column_name FROM information_schema.columns WHERE table_name=:table"),
        {"table": table},
    )
    return [row[0] for row in result.fetchall()]

def migrate():
    with app.app_context():
        print("Migrating fleet schema...")

        with db.engine.connect() as conn:
            columns = existing_columns(conn, "devices")
            for name, sql_type in DEVICE_COLUMNS.items():
                if name not in columns:
                    print(f"Adding devices.{name}...")
                    conn.execute(text(f"ALTER TABLE devices ADD COLUMN {name} {sql_type}"))
                else:
                    print(f"devices.{name} already exists.")

            if "user_id" not in columns:
                conn.execute(text("CREATE INDEX ix_devices_user_id ON devices (user_id)"))

            result = conn.execute(text(
                "SELECT is_nullable FROM information_schema.columns "
                "WHERE table_name='device_commands' AND column_name='device_id'"
            ))
            row = result.fetchone()
            if row and row[0] == 'NO':
                print("Allowing broadcast commands (device_commands.device_id NULL)...")
                conn.execute(text("ALTER TABLE device_commands ALTER COLUMN device_id DROP NOT NULL"))

            conn.commit()

        # Creates command_deliveries and anything else still missing
        db.create_all()
        print("Migration complete.")

if __name__ == "__main__":
    migrate()
