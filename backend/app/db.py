"""
Database client configuration.
Uses Supabase for PostgreSQL + Auth (orders, payment_verification_logs, profiles).
"""

import os
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

if not SUPABASE_URL or not SUPABASE_KEY:
    raise ValueError("SUPABASE_URL and SUPABASE_KEY must be set in environment variables")

# Client for user-level operations (uses anon key + RLS); used to verify admin JWTs
supabase: Client = create_client(SUPABASE_URL, SUPABASE_KEY)

# Admin client for service-level operations (bypasses RLS): audit log writes,
# verify_order_payment RPC, admin monitor reads
supabase_admin: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY) if SUPABASE_SERVICE_KEY else None
