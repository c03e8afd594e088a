"""CDK construct that runs a database initialization function on deploy.

The construct deploys a container-image Lambda and invokes it through an
``AwsCustomResource``. The handler it is meant to carry lives in
``functions/rds_init``.

Identity helpers are importable without the CDK so tooling (the CLI, tests)
can predict the token a deployment will use.
"""

__version__ = "0.1.0"
