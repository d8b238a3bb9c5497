"""Workflow mixing generic steps, third-party calls and a multi-day sleep.

Run it with an in-process gateway:

    durastep worker run guides.onboarding_workflow:onboarding
"""

from durastep import TransportError, WorkflowContext

CRM_URL = "https://crm.example.com/api/contacts"
MAILER_URL = "https://mailer.example.com/api/send"


async def onboarding(context: WorkflowContext):
    signup = context.request_payload or {}

    contact = await context.call(
        "create contact",
        CRM_URL,
        method="POST",
        body={"email": signup.get("email"), "tenant": context.headers.get("x-tenant")},
        retries=3,
    )
    if contact.status >= 400:
        return {"created": False, "status": contact.status, "reason": contact.body}

    welcome = await context.run("render welcome", lambda: f"Welcome on the {signup.get('plan')} plan")
    await context.call("send welcome", MAILER_URL, method="POST", body={"text": welcome})

    await context.sleep("wait three days", 3 * 24 * 3600)

    try:
        await context.call("send follow-up", MAILER_URL, method="POST", body={"text": "How is it going?"})
    except TransportError:
        # The mailer stayed unreachable; the run still completes
        return {"created": True, "followed_up": False}
    return {"created": True, "followed_up": True}
