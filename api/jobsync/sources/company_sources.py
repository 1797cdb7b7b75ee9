"""Curated company names used to seed candidate board slugs."""

CURATED_COMPANY_NAMES = [
    "GitLab",
    "Vercel",
    "Webflow",
    "Duolingo",
    "Grafana Labs",
    "Scale AI",
    "Gusto",
    "Flexport",
    "Rippling",
    "Brex",
    "Lattice",
    "Checkr",
    "Amplitude",
    "Retool",
    "Mixpanel",
    "Airtable",
    "Figma",
    "Canva",
    "Miro",
    "Render",
    "Railway",
    "Fly.io",
    "Supabase",
    "PlanetScale",
    "Neon",
    "Temporal",
    "Prefect",
    "Dagster",
    "Airbyte",
    "Fivetran",
    "Hightouch",
    "dbt Labs",
    "ClickHouse",
    "Timescale",
    "Replicate",
    "Inngest",
    "Pipedream",
    "Netlify",
    "Plaid",
    "Attentive",
    "Customer.io",
    "Braze",
    "Klaviyo",
    "Intercom",
    "Help Scout",
    "Zendesk",
    "Chainalysis",
    "Coinbase",
    "Kraken",
    "Alchemy",
]
