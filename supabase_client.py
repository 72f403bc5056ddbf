from supabase import create_client

from config import settings

supabase = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)

# Server-side admin client (service role, bypasses RLS)
supabase_admin = None
if settings.SUPABASE_SERVICE_ROLE_KEY:
    supabase_admin = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)


def user_client(access_token):
    """Anon-key client whose PostgREST calls carry the user's JWT, so RLS sees auth.uid()."""
    client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
    client.postgrest.auth(access_token)
    return client
