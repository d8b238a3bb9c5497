"""Workflow definitions loaded by CLI tests."""


async def onboarding(context):
    user = await context.run("create user", lambda: {"id": 1})
    await context.sleep("cool down", 60)
    return user


NOT_A_WORKFLOW = 42
