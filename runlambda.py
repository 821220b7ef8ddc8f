import os
import boto3

ssm = boto3.client("ssm")
for var in ["GITHUB_TOKEN"]:
    os.environ[var] = ssm.get_parameter(
        Name=os.environ["SSM_PREFIX"] + "/" + var, WithDecryption=True
    )["Parameter"]["Value"]

from mangum import Mangum
from example_app import app_from_env

lambda_handler = Mangum(app_from_env())
